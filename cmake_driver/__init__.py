"""
cmake_driver - CMake server protocol client.

Drives a `cmake -E server` subprocess over its local endpoint and exposes
configure / build / clean / install verbs on top of the protocol.

Architecture:
    ┌─────────────────────────────────────────────────┐
    │                CMakeController                  │  ← Public API
    │  (verbs, setting-change reactions, build runs)  │
    ├─────────────────────────────────────────────────┤
    │               ProtocolEngine                    │  ← Session FSM
    │  (handshake, configure chain, continuations)    │
    ├─────────────────────────────────────────────────┤
    │              ServerTransport                    │  ← Process + pipe
    │  (spawn, connect retry, exit detection)         │
    ├─────────────────────────────────────────────────┤
    │                FrameCodec                       │  ← Wire framing
    │  (delimited JSON frames, cookie stamping)       │
    └─────────────────────────────────────────────────┘

Supporting modules:
    codemodel.py        - TargetModel extraction from the codemodel reply
    config.py           - DriverConfig dataclass
    exceptions.py       - Custom exception hierarchy
    models.py           - Protocol and state enums, Target
    runner.py           - cmake --version check and cmake --build runs
    kits.py             - Toolchain kits registry
    generators.py       - Generator registry
    settings.py         - Workspace settings with change listeners
    cleanup.py          - Cache file and build directory removal
    metrics.py          - Observability and performance tracking
    cli.py              - python -m cmake_driver
"""

# --- Core Public API ---
from cmake_driver.controller import CMakeController
from cmake_driver.engine import ProtocolEngine, Session
from cmake_driver.transport import ServerTransport
from cmake_driver.codec import FrameCodec
from cmake_driver.codemodel import TargetModel, EMPTY_MODEL, parse_codemodel

# --- Configuration ---
from cmake_driver.config import DriverConfig, DEFAULT_CONFIG

# --- Models ---
from cmake_driver.models import (
    ALL_TARGET,
    CodemodelStatus,
    MessageType,
    ProcessState,
    RequestType,
    SessionState,
    Target,
    TargetType,
)

# --- Collaborators ---
from cmake_driver.kits import Kit, KitRegistry
from cmake_driver.generators import Generator, GeneratorRegistry
from cmake_driver.settings import WorkspaceSettings

# --- Exceptions ---
from cmake_driver.exceptions import (
    CMakeDriverError,
    CMakeError,
    CMakeNotFoundError,
    CMakeVersionError,
    CMakeVersionUnknownError,
    ServerStartupError,
    TransportError,
    NotConnectedError,
    ServerProcessDiedError,
    ProtocolError,
    UnsupportedProtocolError,
    FrameDecodeError,
    ServerReplyError,
    CodemodelError,
    InvalidCodemodelError,
    ConfigurationNotFoundError,
    NoTargetsError,
    SessionError,
    SessionBusyError,
    NoKitSelectedError,
)

# --- Infrastructure ---
from cmake_driver.metrics import MetricsCollector, get_metrics
from cmake_driver.runner import CMakeVersion, RunResult, check_cmake_version, run_command

__version__ = "0.1.0"

__all__ = [
    # Core
    "CMakeController",
    "ProtocolEngine",
    "Session",
    "ServerTransport",
    "FrameCodec",
    "TargetModel",
    "EMPTY_MODEL",
    "parse_codemodel",
    # Config
    "DriverConfig",
    "DEFAULT_CONFIG",
    # Models
    "ALL_TARGET",
    "CodemodelStatus",
    "MessageType",
    "ProcessState",
    "RequestType",
    "SessionState",
    "Target",
    "TargetType",
    # Collaborators
    "Kit",
    "KitRegistry",
    "Generator",
    "GeneratorRegistry",
    "WorkspaceSettings",
    # Exceptions
    "CMakeDriverError",
    "CMakeError",
    "CMakeNotFoundError",
    "CMakeVersionError",
    "CMakeVersionUnknownError",
    "ServerStartupError",
    "TransportError",
    "NotConnectedError",
    "ServerProcessDiedError",
    "ProtocolError",
    "UnsupportedProtocolError",
    "FrameDecodeError",
    "ServerReplyError",
    "CodemodelError",
    "InvalidCodemodelError",
    "ConfigurationNotFoundError",
    "NoTargetsError",
    "SessionError",
    "SessionBusyError",
    "NoKitSelectedError",
    # Infrastructure
    "MetricsCollector",
    "get_metrics",
    "CMakeVersion",
    "RunResult",
    "check_cmake_version",
    "run_command",
]
