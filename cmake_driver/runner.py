"""
Execution of the CMake command line outside of the server protocol:
the `--version` check run before starting the server, and the
`cmake --build` invocations behind build / clean / install.
"""

import asyncio
import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from typing import Callable, Dict, List, NamedTuple, Optional

from cmake_driver.config import DriverConfig, DEFAULT_CONFIG
from cmake_driver.exceptions import CMakeNotFoundError
from cmake_driver.generators import Generator
from cmake_driver.kits import Kit
from cmake_driver.models import ALL_TARGET

logger = logging.getLogger(__name__)

VERSION_PATTERN = re.compile(r"cmake version (\d+)\.(\d+)\.(\d+)")


class CMakeVersion(NamedTuple):
    major: int
    minor: int
    patch: int

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def check_cmake_version(cmake_executable: str = "cmake",
                        config: DriverConfig = None) -> Optional[CMakeVersion]:
    """
    Run `cmake --version` and extract the version.

    Returns:
        The parsed version, or None when the output can't be parsed.

    Raises:
        CMakeNotFoundError: The executable is missing or can't be run.
    """
    cfg = config or DEFAULT_CONFIG
    logger.info(f"{cmake_executable} --version")
    try:
        result = subprocess.run(
            [cmake_executable, "--version"],
            capture_output=True, text=True, timeout=cfg.version_check_timeout
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"version check failed: {e}")
        raise CMakeNotFoundError(cmake_executable) from e

    output = result.stdout.strip() or result.stderr.strip()
    match = VERSION_PATTERN.search(output)
    if match is None:
        logger.debug(f"unparsable version output: {output[:200]}")
        return None
    return CMakeVersion(*(int(group) for group in match.groups()))


@dataclass
class RunResult:
    """Everything returned after the execution of a child process."""
    code: int = -1
    stdout: str = ""
    stderr: str = ""
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.code == 0 and not self.error


@dataclass
class BuildInvocation:
    """A `cmake --build` command line and the environment it runs in."""
    action: str
    program: str
    args: List[str]
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def command_line(self) -> str:
        return " ".join([self.program] + self.args)


def build_invocation(config: DriverConfig, kit: Optional[Kit] = None,
                     generator: Optional[Generator] = None,
                     target: Optional[str] = None) -> BuildInvocation:
    """cmake --build <dir> --parallel <n> [--target <t>] [-- <generator options>]"""
    args = [
        "--build", config.resolved_build_directory,
        "--parallel", str(config.effective_parallel_jobs),
    ]
    if target and target != ALL_TARGET:
        args += ["--target", target]
    if generator is not None and generator.options:
        args += ["--"] + list(generator.options)
    return BuildInvocation("build", config.cmake_executable, args, dict(kit.env) if kit else {})


def clean_invocation(config: DriverConfig, kit: Optional[Kit] = None) -> BuildInvocation:
    """cmake --build <dir> --target clean"""
    args = ["--build", config.resolved_build_directory, "--target", "clean"]
    return BuildInvocation("clean", config.cmake_executable, args, dict(kit.env) if kit else {})


def install_invocation(config: DriverConfig, kit: Optional[Kit] = None) -> BuildInvocation:
    """cmake --build <dir> --target install"""
    args = ["--build", config.resolved_build_directory, "--target", "install"]
    return BuildInvocation("install", config.cmake_executable, args, dict(kit.env) if kit else {})


def merge_env(overlay: Optional[Dict[str, str]]) -> Dict[str, str]:
    """The current process environment with `overlay` applied on top."""
    env = os.environ.copy()
    if overlay:
        env.update(overlay)
    return env


async def run_command(program: str, args: List[str] = None,
                      env: Optional[Dict[str, str]] = None,
                      on_line: Optional[Callable[[str], None]] = None,
                      cwd: Optional[str] = None) -> RunResult:
    """
    Asynchronously execute a program, streaming its output line by line.

    Args:
        program: Name of the program, or absolute path to it.
        args: Arguments passed to the program.
        env: Environment overlay merged on top of the current environment.
        on_line: Called with every non-empty output line (stdout and stderr).
        cwd: Working directory.

    Returns:
        RunResult. Spawn failures are reported in `error`, not raised.
    """
    args = args or []
    logger.info(" ".join([program] + args))
    result = RunResult()

    try:
        process = await asyncio.create_subprocess_exec(
            program, *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=merge_env(env),
            cwd=cwd,
        )
    except OSError as e:
        result.error = f"{type(e).__name__} - {e}"
        logger.error(f"Failed to start {program}: {e}")
        return result

    async def pump(stream: asyncio.StreamReader, chunks: List[str]):
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace")
            chunks.append(line)
            stripped = line.rstrip("\r\n")
            if stripped and on_line is not None:
                on_line(stripped)

    stdout: List[str] = []
    stderr: List[str] = []
    await asyncio.gather(pump(process.stdout, stdout), pump(process.stderr, stderr))
    result.code = await process.wait()
    result.stdout = "".join(stdout)
    result.stderr = "".join(stderr)
    return result
