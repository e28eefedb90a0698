"""
Shared utility functions for the cmake_driver package.

Path normalization, setting substitution and the naming of the server
endpoint live here so every component derives them the same way.
"""

import os
import re
import sys
import tempfile
from typing import Dict, Optional


def normalize_path(*tokens: str) -> str:
    """
    Join and normalize a path, always using '/' as separator.

    Drive letters are upper-cased on Windows-style paths so that paths
    handed to CMake compare equal regardless of how they were typed.

    Examples:
        >>> normalize_path("/home/user/project", "build", "..", "out")
        '/home/user/project/out'
        >>> normalize_path("c:\\\\work\\\\proj")
        'C:/work/proj'
    """
    path = os.path.normpath(os.path.join(*tokens))
    path = path.replace("\\", "/")
    return re.sub(r"^([a-z]):", lambda m: m.group(0).upper(), path)


def substitute_variables(value: str, workspace_folder: str,
                         extra: Optional[Dict[str, str]] = None) -> str:
    """
    Replace ${workspaceFolder} and any ${name} from `extra` in a setting value.

    Args:
        value: The raw setting value.
        workspace_folder: The source directory of the project.
        extra: Optional additional substitutions.

    Returns:
        The substituted string. Non-string values are returned unchanged.
    """
    if not isinstance(value, str):
        return value
    value = value.replace("${workspaceFolder}", workspace_folder)
    for name, replacement in (extra or {}).items():
        value = value.replace("${" + name + "}", str(replacement))
    return value


def make_pipe_name(pid: int) -> str:
    """
    Name of the local endpoint the CMake server listens on.

    A named pipe on Windows, a Unix domain socket path elsewhere.
    """
    if sys.platform == "win32":
        return f"\\\\?\\pipe\\cmake.server.pipe.{pid}"
    return os.path.join(tempfile.gettempdir(), f"cmake.server.pipe.{pid}")


def make_cookie(pid: int) -> str:
    """Session cookie, unique per driver process invocation."""
    return f"simple-cmake-{pid}"
