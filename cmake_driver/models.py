"""
Structured data models for the cmake_driver package.

Defines the enums of the session state machine and the wire protocol, and
the typed target objects extracted from the CMake codemodel.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


# --- Wire Protocol Enums ---

class MessageType(str, Enum):
    """Message types the CMake server sends."""
    HELLO = "hello"
    REPLY = "reply"
    ERROR = "error"
    SIGNAL = "signal"
    MESSAGE = "message"
    PROGRESS = "progress"

    @classmethod
    def from_string(cls, value: Any) -> Optional["MessageType"]:
        """Resolve a message type, None when unknown."""
        for member in cls:
            if member.value == value:
                return member
        return None


class RequestType(str, Enum):
    """Request types the driver sends."""
    HANDSHAKE = "handshake"
    GLOBAL_SETTINGS = "globalSettings"
    CONFIGURE = "configure"
    COMPUTE = "compute"
    CODEMODEL = "codemodel"


# --- State Machine Enums ---

class SessionState(Enum):
    """States of the protocol engine."""
    DISCONNECTED = "disconnected"
    STARTING = "starting"
    AWAITING_HELLO = "awaiting_hello"
    HANDSHAKING = "handshaking"
    IDLE = "idle"
    CONFIGURING = "configuring"
    GENERATING = "generating"
    COMPUTING = "computing"
    EXTRACTING_TARGETS = "extracting_targets"

    @property
    def is_connected(self) -> bool:
        return self not in (SessionState.DISCONNECTED, SessionState.STARTING)

    @property
    def is_configuring(self) -> bool:
        """True while a configure chain is in flight."""
        return self in CONFIGURE_CHAIN_STATES


CONFIGURE_CHAIN_STATES = frozenset({
    SessionState.CONFIGURING,
    SessionState.GENERATING,
    SessionState.COMPUTING,
    SessionState.EXTRACTING_TARGETS,
})

# Chain request -> state in which its reply is expected
AWAITED_REPLY_STATES: Dict[str, SessionState] = {
    RequestType.CONFIGURE.value: SessionState.CONFIGURING,
    RequestType.COMPUTE.value: SessionState.COMPUTING,
    RequestType.CODEMODEL.value: SessionState.EXTRACTING_TARGETS,
}


class ProcessState(Enum):
    """Lifecycle of the CMake server subprocess."""
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


class CodemodelStatus(Enum):
    """Outcome of the most recent codemodel parse."""
    NOT_PARSED = "not_parsed"
    OK = "ok"
    INVALID = "invalid"
    CONFIGURATION_NOT_FOUND = "configuration_not_found"
    NO_TARGETS = "no_targets"


# --- Targets ---

class TargetType(Enum):
    """Target kinds reported in CMake's codemodel."""
    EXECUTABLE = "EXECUTABLE"
    SHARED_LIBRARY = "SHARED_LIBRARY"
    STATIC_LIBRARY = "STATIC_LIBRARY"
    UTILITY = "UTILITY"
    UNSUPPORTED = "UNSUPPORTED"

    @classmethod
    def from_codemodel(cls, value: Any) -> "TargetType":
        """Map a codemodel type string, unknown types become UNSUPPORTED."""
        try:
            target_type = cls(value)
        except ValueError:
            return cls.UNSUPPORTED
        return target_type

    @property
    def display_name(self) -> str:
        """Human-readable name for the target type."""
        return self.name.replace("_", " ").lower()


# Pseudo-target used to build everything
ALL_TARGET = "[all]"


@dataclass(frozen=True)
class Target:
    """A buildable CMake target."""
    name: str
    type: TargetType

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type.value}
