"""
Custom exception hierarchy for the cmake_driver package.

Every failure mode of the CMake server session has its own typed exception
so callers can tell a missing executable from a crashed server or a bad
codemodel without parsing message strings.
"""


class CMakeDriverError(Exception):
    """Base exception for all cmake_driver errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.details = details or {}


# --- CMake Executable / Startup Errors ---

class CMakeError(CMakeDriverError):
    """Base exception for errors raised before the server is running."""
    pass


class CMakeNotFoundError(CMakeError):
    """CMake executable could not be located or executed."""

    def __init__(self, executable: str = "cmake"):
        super().__init__(
            f"Couldn't start CMake '{executable}'. Install it and make it available "
            f"in PATH, or point SIMPLECMAKE_EXECUTABLE to a valid CMake executable.",
            details={"executable": executable}
        )


class CMakeVersionError(CMakeError):
    """CMake version does not meet minimum requirements."""

    def __init__(self, found_version: str, min_version: tuple):
        super().__init__(
            f"Insufficient version of CMake ({found_version}). "
            f"Please update to at least {min_version[0]}.{min_version[1]}",
            details={"found_version": found_version, "min_version": min_version}
        )


class CMakeVersionUnknownError(CMakeError):
    """CMake version could not be parsed and the caller declined to continue."""

    def __init__(self, output: str = ""):
        super().__init__(
            "CMake was found, but its version couldn't be checked. Start declined.",
            details={"output": output}
        )


class ServerStartupError(CMakeError):
    """The CMake server process could not be spawned."""

    def __init__(self, reason: str = "Unknown error"):
        super().__init__(
            f"Could not start CMake server: {reason}",
            details={"reason": reason}
        )


# --- Transport Errors ---

class TransportError(CMakeDriverError):
    """Base exception for endpoint and process lifetime errors."""
    pass


class NotConnectedError(TransportError):
    """A frame was sent while the endpoint is not open."""

    def __init__(self):
        super().__init__("CMake server endpoint is not connected")


class ServerProcessDiedError(TransportError):
    """The CMake server terminated without being asked to."""

    def __init__(self, exit_code: int = None, stderr: str = "", connected: bool = True):
        if connected:
            msg = "CMake server unexpectedly stopped"
        else:
            msg = "CMake server exited before its endpoint became available"
        if exit_code is not None:
            msg += f" with exit code {exit_code}"
        if stderr:
            msg += f":\n{stderr}"
        super().__init__(
            msg,
            details={"exit_code": exit_code, "stderr": stderr, "connected": connected}
        )


# --- Protocol Errors ---

class ProtocolError(CMakeDriverError):
    """Base exception for wire protocol errors."""
    pass


class UnsupportedProtocolError(ProtocolError):
    """The server does not advertise protocol major version 1."""

    def __init__(self, advertised: list = None):
        super().__init__(
            "Server protocol version 1.x not supported. "
            "Please update your CMake to a more recent version.",
            details={"advertised": advertised or []}
        )


class FrameDecodeError(ProtocolError):
    """A delimiter-bounded frame did not contain valid JSON."""

    def __init__(self, reason: str, frame: bytes = b""):
        super().__init__(
            f"Invalid server frame: {reason}",
            details={"reason": reason, "frame": frame[:200]}
        )


class ServerReplyError(ProtocolError):
    """The server answered a request with an 'error' message."""

    def __init__(self, in_reply_to: str, error_message: str):
        super().__init__(
            f"error: {in_reply_to} - {error_message}",
            details={"in_reply_to": in_reply_to, "error_message": error_message}
        )


# --- Codemodel Errors ---

class CodemodelError(CMakeDriverError):
    """Base exception for codemodel parsing errors."""
    pass


class InvalidCodemodelError(CodemodelError):
    """The codemodel payload does not have the expected layout."""

    def __init__(self, reason: str):
        super().__init__(
            f"error parsing code model: {reason}",
            details={"reason": reason}
        )


class ConfigurationNotFoundError(CodemodelError):
    """No codemodel configuration matches the active build variant."""

    def __init__(self, configuration: str, available: list = None):
        super().__init__(
            f"error parsing code model: couldn't find configuration ({configuration})",
            details={"configuration": configuration, "available": available or []}
        )


class NoTargetsError(CodemodelError):
    """The matching configuration holds no usable target."""

    def __init__(self, configuration: str, model=None, unsupported: int = 0):
        super().__init__(
            f"error parsing code model: couldn't find any target in configuration ({configuration})",
            details={"configuration": configuration, "unsupported": unsupported}
        )
        self.model = model


# --- Session Errors ---

class SessionError(CMakeDriverError):
    """Base exception for verbs issued in the wrong session state."""
    pass


class SessionBusyError(SessionError):
    """A configure chain is already in flight."""

    def __init__(self, state: str):
        super().__init__(
            f"A configure is already in progress (state: {state})",
            details={"state": state}
        )


class NoKitSelectedError(SessionError):
    """No toolchain kit is selected."""

    def __init__(self, kit_name: str = None):
        super().__init__(
            "No kit selected" if not kit_name else f"Unknown kit '{kit_name}'",
            details={"kit": kit_name}
        )
