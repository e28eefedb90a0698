"""
Centralized configuration for the cmake_driver package.

All tunable constants, timeouts, paths and CMake options are defined here
as a single dataclass to avoid scattering magic numbers across modules.
"""

import os
import shlex
from dataclasses import dataclass, field
from typing import List, Optional

from cmake_driver.utils import normalize_path, substitute_variables


@dataclass
class DriverConfig:
    """
    Configuration object for a CMake server session.
    Instantiate with defaults or override specific values.

    Example:
        config = DriverConfig(source_directory="/src/project", generator="Ninja")
        config = DriverConfig.from_env()
    """

    # --- CMake Executable ---
    cmake_executable: str = "cmake"
    min_cmake_version: tuple = (3, 10)
    version_check_timeout: int = 10

    # --- Project Layout ---
    source_directory: str = field(default_factory=os.getcwd)
    build_directory: str = "${workspaceFolder}/build"
    install_directory: Optional[str] = None
    cache_filename: str = "CMakeCache.txt"

    # --- Configure / Build ---
    generator: str = "Ninja"
    parallel_jobs: Optional[int] = None  # None = use os.cpu_count()
    configure_arguments: List[str] = field(default_factory=list)
    configurations: List[str] = field(default_factory=lambda: [
        "Debug",
        "Release",
        "RelWithDebInfo",
        "MinSizeRel",
    ])

    # --- Server Protocol ---
    server_name: str = "CMake Server"
    connect_retry_interval: float = 0.01
    stderr_tail_bytes: int = 4096

    # --- Process Cleanup ---
    sigterm_timeout: float = 3
    sigkill_timeout: float = 2

    @property
    def resolved_source_directory(self) -> str:
        """Normalized absolute source directory."""
        return normalize_path(os.path.abspath(self.source_directory))

    @property
    def resolved_build_directory(self) -> str:
        """Build directory with ${workspaceFolder} substituted."""
        value = substitute_variables(self.build_directory, self.resolved_source_directory)
        if not os.path.isabs(value):
            value = os.path.join(self.resolved_source_directory, value)
        return normalize_path(value)

    @property
    def cache_file(self) -> str:
        """Path of the CMake cache file inside the build directory."""
        return normalize_path(self.resolved_build_directory, self.cache_filename)

    @property
    def effective_parallel_jobs(self) -> int:
        """Returns the number of parallel build jobs to use."""
        return self.parallel_jobs or (os.cpu_count() or 2)

    @classmethod
    def from_env(cls) -> "DriverConfig":
        """
        Create a configuration from environment variables.
        Environment variables are prefixed with SIMPLECMAKE_.
        """
        kwargs = {}

        env_map = {
            "SIMPLECMAKE_EXECUTABLE": "cmake_executable",
            "SIMPLECMAKE_SOURCE_DIRECTORY": "source_directory",
            "SIMPLECMAKE_BUILD_DIRECTORY": "build_directory",
            "SIMPLECMAKE_INSTALL_DIRECTORY": "install_directory",
            "SIMPLECMAKE_GENERATOR": "generator",
            "SIMPLECMAKE_PARALLEL_JOBS": ("parallel_jobs", int),
            "SIMPLECMAKE_CONNECT_RETRY_INTERVAL": ("connect_retry_interval", float),
            "SIMPLECMAKE_CONFIGURE_ARGUMENTS": ("configure_arguments", shlex.split),
        }

        for env_key, field_info in env_map.items():
            val = os.environ.get(env_key)
            if val is None:
                continue

            if isinstance(field_info, str):
                kwargs[field_info] = val
            elif isinstance(field_info, tuple):
                field_name, converter = field_info
                try:
                    kwargs[field_name] = converter(val)
                except (ValueError, TypeError):
                    pass

        return cls(**kwargs)

    def validate(self) -> List[str]:
        """
        Validate configuration values and return list of warnings.
        Returns empty list if all values are valid.
        """
        warnings = []

        if not self.cmake_executable:
            warnings.append("cmake_executable must not be empty")

        if not os.path.isdir(self.source_directory):
            warnings.append(f"source_directory does not exist: {self.source_directory}")

        if self.parallel_jobs is not None and self.parallel_jobs < 1:
            warnings.append(f"parallel_jobs must be >= 1, got {self.parallel_jobs}")

        if self.connect_retry_interval <= 0:
            warnings.append(f"connect_retry_interval must be > 0, got {self.connect_retry_interval}")
        elif self.connect_retry_interval > 1:
            warnings.append(f"connect_retry_interval={self.connect_retry_interval}s is very high")

        if not self.configurations:
            warnings.append("configurations must list at least one build type")

        if self.resolved_build_directory == self.resolved_source_directory:
            warnings.append("build_directory is the source directory, in-source builds are not supported")

        return warnings


# Module-level default configuration instance
DEFAULT_CONFIG = DriverConfig()
