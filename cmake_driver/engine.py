"""
CMake server protocol engine.

Session state machine:

    DISCONNECTED -> STARTING -> AWAITING_HELLO -> HANDSHAKING -> IDLE
    IDLE -> CONFIGURING -> GENERATING -> COMPUTING -> EXTRACTING_TARGETS -> IDLE

Requests are never pipelined: each request of the configure chain is only
sent once the reply to the previous one has been observed, so a single
session cookie is enough to correlate replies. Work that must wait for the
handshake or for the end of the configure chain is parked in one-shot
continuation slots of the Session.
"""

import asyncio
import inspect
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from cmake_driver.cleanup import delete_cache_file
from cmake_driver.codec import FrameCodec
from cmake_driver.codemodel import EMPTY_MODEL, TargetModel, parse_codemodel
from cmake_driver.config import DriverConfig, DEFAULT_CONFIG
from cmake_driver.exceptions import (
    CMakeDriverError,
    CMakeVersionError,
    CMakeVersionUnknownError,
    ConfigurationNotFoundError,
    CodemodelError,
    NoKitSelectedError,
    NoTargetsError,
    NotConnectedError,
    ServerProcessDiedError,
    ServerReplyError,
    SessionBusyError,
    UnsupportedProtocolError,
)
from cmake_driver.generators import GeneratorRegistry
from cmake_driver.kits import Kit, KitRegistry
from cmake_driver.metrics import get_metrics
from cmake_driver.models import (
    ALL_TARGET,
    AWAITED_REPLY_STATES,
    CodemodelStatus,
    MessageType,
    RequestType,
    SessionState,
)
from cmake_driver.runner import check_cmake_version, merge_env
from cmake_driver.server_notification_handlers import (
    file_change_handler,
    message_handler,
    progress_handler,
    unhandled_signal_handler,
)
from cmake_driver.settings import WorkspaceSettings
from cmake_driver.transport import ServerTransport
from cmake_driver.utils import make_cookie, make_pipe_name, normalize_path

logger = logging.getLogger(__name__)

Continuation = Callable[[], Optional[Awaitable[Any]]]
ConfirmCallback = Callable[[str], Union[bool, Awaitable[bool]]]


@dataclass
class Session:
    """
    The single live protocol context. Replaced wholesale on reset, never
    patched field by field.
    """
    cookie: str
    state: SessionState = SessionState.DISCONNECTED
    pid: Optional[int] = None
    configured: bool = False
    post_handshake: Optional[Continuation] = None
    post_configure: Optional[Continuation] = None
    targets: TargetModel = EMPTY_MODEL
    codemodel_status: CodemodelStatus = CodemodelStatus.NOT_PARSED
    chain_started: Optional[float] = None


class ProtocolEngine:
    """
    Drives one CMake server session over a ServerTransport.

    Usage:
        engine = ProtocolEngine(config, kits, generators, settings)
        await engine.start()
        await engine.wait_for_state(SessionState.IDLE)
        engine.configure()
        await engine.wait_for_state(SessionState.IDLE)
        print(engine.get_targets())
        await engine.stop()
    """

    def __init__(self, config: DriverConfig = None,
                 kits: KitRegistry = None,
                 generators: GeneratorRegistry = None,
                 settings: WorkspaceSettings = None,
                 transport: ServerTransport = None,
                 confirm: Optional[ConfirmCallback] = None,
                 version_check: Callable = check_cmake_version):
        self.config = config or DEFAULT_CONFIG
        self.settings = settings or WorkspaceSettings()
        self.settings.register("configuration", self.config.configurations[0])
        self.settings.register("target", ALL_TARGET)
        self.kits = kits or KitRegistry(self.settings)
        self.generators = generators or GeneratorRegistry()

        self.cookie = make_cookie(os.getpid())
        self.codec = FrameCodec(self.cookie, self.config.server_name)
        self.transport = transport or ServerTransport(self.codec, self.config)
        self.session = Session(self.cookie)
        self.last_error: Optional[CMakeDriverError] = None

        self._confirm = confirm
        self._version_check = version_check
        self._waiters: List[Tuple[frozenset, asyncio.Future]] = []
        self._tasks: set = set()
        self._metrics = get_metrics()

        self._handlers: Dict[MessageType, Callable[[Dict[str, Any]], None]] = {
            MessageType.HELLO: self._on_hello,
            MessageType.REPLY: self._on_reply,
            MessageType.ERROR: self._on_error,
            MessageType.SIGNAL: self._on_signal,
            MessageType.MESSAGE: message_handler(logger),
            MessageType.PROGRESS: progress_handler(logger),
        }
        self._reply_handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            RequestType.HANDSHAKE.value: self._on_handshake_reply,
            RequestType.GLOBAL_SETTINGS.value: self._on_global_settings_reply,
            RequestType.CONFIGURE.value: self._on_configure_reply,
            RequestType.COMPUTE.value: self._on_compute_reply,
            RequestType.CODEMODEL.value: self._on_codemodel_reply,
        }
        self._signal_handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            "dirty": self._on_dirty,
            "fileChange": file_change_handler(logger),
        }
        self._unhandled_signal = unhandled_signal_handler(logger)

    # --- State ---

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def targets(self) -> TargetModel:
        return self.session.targets

    @property
    def codemodel_status(self) -> CodemodelStatus:
        return self.session.codemodel_status

    def is_configured(self) -> bool:
        return self.session.configured

    def is_ready(self) -> bool:
        """Handshake done and no configure chain in flight."""
        return self.session.state is SessionState.IDLE

    def is_busy(self) -> bool:
        return self.session.state.is_configuring

    def get_targets(self) -> List[str]:
        """Target names offered to callers, '[all]' first. Never touches the server."""
        return self.session.targets.target_names()

    def invalidate(self) -> None:
        """Force the next build / clean / install to run the configure chain first."""
        self.session.configured = False

    def _set_state(self, state: SessionState) -> None:
        previous = self.session.state
        self.session.state = state
        if previous is not state:
            logger.debug(f"state {previous.value} -> {state.value}")
        for states, future in list(self._waiters):
            if state in states and not future.done():
                future.set_result(state)

    async def wait_for_state(self, *states: SessionState,
                             timeout: Optional[float] = None) -> SessionState:
        """
        Suspend until the FSM reaches one of `states`.

        Raises:
            asyncio.TimeoutError: None of the states was reached in time.
        """
        if self.session.state in states:
            return self.session.state
        future = asyncio.get_running_loop().create_future()
        waiter = (frozenset(states), future)
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            self._waiters.remove(waiter)

    # --- Lifecycle ---

    async def start(self, on_handshake: Optional[Continuation] = None) -> None:
        """
        Check the CMake version, spawn the server and begin the handshake.

        Starting while a session is active is a no-op. Returns once the process
        is spawned; the handshake completes in the background. A stop() issued
        while the start is suspended abandons it, and a server spawned for the
        abandoned session is stopped again.

        Raises:
            CMakeNotFoundError, CMakeVersionError, CMakeVersionUnknownError,
            ServerStartupError: the session stays DISCONNECTED.
        """
        if self.session.state is not SessionState.DISCONNECTED:
            logger.debug("server already started")
            return

        session = Session(self.cookie, post_handshake=on_handshake)
        self.session = session
        self._set_state(SessionState.STARTING)

        try:
            await self._check_version()
            if self._start_abandoned(session):
                return

            kit = self.kits.selected()
            if kit is None:
                logger.debug("no kit selected, starting the server with the current environment")
            pipe_name = make_pipe_name(os.getpid())
            args = ["-E", "server", "--experimental", f"--pipe={pipe_name}"]
            pid = await self.transport.start(
                self.config.cmake_executable, args,
                merge_env(kit.env if kit else None), pipe_name,
                on_connected=self._on_connected,
                on_message=self.dispatch,
                on_exit=self._on_server_exit,
            )
        except CMakeDriverError as e:
            if self.session is session:
                self.last_error = e
                self._reset()
            raise

        if self._start_abandoned(session):
            await self.transport.stop()
            return
        session.pid = pid

    def _start_abandoned(self, session: Session) -> bool:
        if self.session is session:
            return False
        logger.info("session stopped while starting, start abandoned")
        return True

    async def stop(self) -> None:
        """Tear the session down. Safe to call in any state."""
        await self.transport.stop()
        if self.session.state is not SessionState.DISCONNECTED:
            self._reset()

    def _reset(self) -> None:
        if self.session.post_configure is not None:
            logger.info("session closed, pending action dropped")
        self.session = Session(self.cookie)
        self.codec.reset()
        self._set_state(SessionState.DISCONNECTED)

    async def _check_version(self) -> None:
        executable = self.config.cmake_executable
        version = await asyncio.to_thread(self._version_check, executable, self.config)

        if version is None:
            if not await self._ask("CMake was found, but its version couldn't be checked. Continue anyway?"):
                raise CMakeVersionUnknownError()
            logger.warning("starting CMake server with an unknown CMake version")
            return

        minimum = tuple(self.config.min_cmake_version[:2])
        if (version.major, version.minor) < minimum:
            raise CMakeVersionError(str(version), self.config.min_cmake_version)
        logger.debug(f"cmake version {version}")

    async def _ask(self, question: str) -> bool:
        if self._confirm is None:
            logger.warning(f"{question} No confirmation callback, declining")
            return False
        answer = self._confirm(question)
        if inspect.isawaitable(answer):
            answer = await answer
        return bool(answer)

    def _on_connected(self) -> None:
        if self.session.state is SessionState.STARTING:
            self._set_state(SessionState.AWAITING_HELLO)

    def _on_server_exit(self, pid: int, code: Optional[int],
                        error: Optional[ServerProcessDiedError]) -> None:
        if pid != self.session.pid:
            logger.debug(f"exit of server {pid} from a previous session ignored")
            return
        if error is not None:
            self.last_error = error
        self._reset()

    # --- Sending ---

    def _send(self, request: Dict[str, Any]) -> None:
        logger.debug(f"server send - {request['type']}")
        self.transport.send(self.codec.encode(request))
        self._metrics.record_request(request["type"])

    def _send_request(self, request: Dict[str, Any]) -> bool:
        """
        Send a request of the handshake or the configure chain. When the
        endpoint is gone the chain is unwound: a failed handshake stops the
        session, a failed chain request returns to IDLE. Returns False then.
        """
        try:
            self._send(request)
        except NotConnectedError as e:
            self.last_error = e
            logger.error(f"{request['type']} not sent: {e}")
            state = self.session.state
            if state is SessionState.HANDSHAKING:
                self.spawn(self.stop())
            elif state.is_configuring:
                self._abort_chain()
            return False
        return True

    def configure(self, clean_cache: bool = False) -> bool:
        """
        Start the configure -> compute -> codemodel chain.

        Returns:
            True when the chain was started. A chain already in flight, a
            session that isn't handshaken or a missing kit are logged and
            return False without changing the state.
        """
        state = self.session.state
        if state.is_configuring:
            logger.warning(str(SessionBusyError(state.value)))
            return False
        if state is not SessionState.IDLE:
            logger.info("CMake server is not running, aborting configure")
            return False

        kit = self.kits.selected()
        if kit is None:
            logger.info(str(NoKitSelectedError(self.settings.get("kit"))))
            return False

        if clean_cache:
            delete_cache_file(self.config.resolved_build_directory, self.config.cache_filename)

        logger.info("Configuring...")
        request = {
            "type": RequestType.CONFIGURE.value,
            "cacheArguments": self._cache_arguments(kit),
        }
        self._set_state(SessionState.CONFIGURING)
        if not self._send_request(request):
            return False
        self.session.chain_started = time.time()
        return True

    def _cache_arguments(self, kit: Kit) -> List[str]:
        args = [
            f"-DCMAKE_BUILD_TYPE={self.settings.get('configuration')}",
            f"-DCMAKE_C_COMPILER:FILEPATH={kit.compiler}",
            f"-DCMAKE_CXX_COMPILER:FILEPATH={kit.compiler}",
        ]
        if kit.linker:
            args.append(f"-DCMAKE_LINKER:FILEPATH={kit.linker}")
        if self.config.install_directory:
            prefix = normalize_path(self.config.install_directory)
            args.append(f"-DCMAKE_INSTALL_PREFIX={prefix}")
        args.extend(kit.options)
        args.extend(self.config.configure_arguments)
        return args

    def run_when_configured(self, action: Continuation) -> bool:
        """
        Run `action` now if the session is configured, otherwise after the
        configure chain, starting one if none is in flight.

        Returns:
            False when the action could not be scheduled.
        """
        state = self.session.state
        if state.is_configuring:
            if self.session.post_configure is not None:
                logger.info("a pending action is replaced")
            self.session.post_configure = action
            return True

        if state is not SessionState.IDLE:
            logger.info("CMake server is not running, aborting")
            return False

        if self.session.configured:
            self._invoke(action)
            return True

        self.session.post_configure = action
        if not self.configure(False):
            self.session.post_configure = None
            return False
        return True

    # --- Dispatch ---

    def dispatch(self, message: Dict[str, Any]) -> None:
        """Handle one decoded server message. Unknown messages are logged and dropped."""
        if "type" not in message:
            logger.info("server - invalid message layout, missing 'type'")
            return

        self._metrics.record_message(str(message["type"]))
        message_type = MessageType.from_string(message["type"])
        if message_type is None:
            logger.info(f"server message - {json.dumps(message)}")
            return

        if self.session.state is SessionState.DISCONNECTED:
            logger.debug(f"server {message_type.value} received while disconnected, ignored")
            return

        self._handlers[message_type](message)

    def _on_hello(self, message: Dict[str, Any]) -> None:
        if self.session.state is not SessionState.AWAITING_HELLO:
            logger.debug(f"unexpected hello in state {self.session.state.value}, ignored")
            return

        logger.debug("server - hello")
        versions = message.get("supportedProtocolVersions")
        if not isinstance(versions, list):
            versions = [] if versions is None else [versions]
            supported = False
        else:
            supported = any(isinstance(v, dict) and v.get("major") == 1 for v in versions)
        if not supported:
            error = UnsupportedProtocolError(versions)
            self.last_error = error
            logger.error(str(error))
            self.spawn(self.stop())
            return

        self._set_state(SessionState.HANDSHAKING)
        self._send_request({
            "type": RequestType.HANDSHAKE.value,
            "sourceDirectory": self.config.resolved_source_directory,
            "buildDirectory": self.config.resolved_build_directory,
            "generator": self.config.generator,
        })

    def _on_reply(self, message: Dict[str, Any]) -> None:
        if message.get("cookie") != self.cookie:
            self._metrics.record_cookie_mismatch()
            return

        in_reply_to = message.get("inReplyTo")
        handler = self._reply_handlers.get(in_reply_to)
        if handler is None:
            logger.debug(f"server reply - {json.dumps(message)}")
            return

        awaited = AWAITED_REPLY_STATES.get(in_reply_to)
        if in_reply_to == RequestType.HANDSHAKE.value:
            awaited = SessionState.HANDSHAKING
        if awaited is not None and self.session.state is not awaited:
            logger.debug(f"reply to {in_reply_to} in state {self.session.state.value}, ignored")
            return

        handler(message)

    def _on_handshake_reply(self, message: Dict[str, Any]) -> None:
        logger.debug("server reply - handshake")
        self._set_state(SessionState.IDLE)

        action, self.session.post_handshake = self.session.post_handshake, None
        if action is not None:
            self._invoke(action)

        self._send_request({"type": RequestType.GLOBAL_SETTINGS.value})

    def _on_global_settings_reply(self, message: Dict[str, Any]) -> None:
        logger.debug("server reply - globalSettings")
        self.generators.update_capabilities(message.get("capabilities", {}))

    def _on_configure_reply(self, message: Dict[str, Any]) -> None:
        logger.info("Generating...")
        self._set_state(SessionState.GENERATING)
        if self._send_request({"type": RequestType.COMPUTE.value}):
            self._set_state(SessionState.COMPUTING)

    def _on_compute_reply(self, message: Dict[str, Any]) -> None:
        self.session.configured = True
        logger.info("Getting targets...")
        self._set_state(SessionState.EXTRACTING_TARGETS)
        self._send_request({"type": RequestType.CODEMODEL.value})

    def _on_codemodel_reply(self, message: Dict[str, Any]) -> None:
        try:
            self._apply_codemodel(message)
        finally:
            # the chain ends in IDLE whatever the payload looked like
            self._set_state(SessionState.IDLE)
            self._end_chain(success=True)

            action, self.session.post_configure = self.session.post_configure, None
            if action is not None:
                self._invoke(action)

    def _apply_codemodel(self, message: Dict[str, Any]) -> None:
        configuration = self.settings.get("configuration")
        try:
            model = parse_codemodel(message, configuration)
        except NoTargetsError as e:
            logger.warning(str(e))
            self.session.targets = e.model
            self.session.codemodel_status = CodemodelStatus.NO_TARGETS
        except ConfigurationNotFoundError as e:
            logger.warning(str(e))
            self.session.codemodel_status = CodemodelStatus.CONFIGURATION_NOT_FOUND
        except CodemodelError as e:
            logger.warning(str(e))
            self.session.codemodel_status = CodemodelStatus.INVALID
        else:
            self.session.targets = model
            self.session.codemodel_status = CodemodelStatus.OK
            count = len(model)
            logger.info(f"Done. Found {count} target{'s' if count > 1 else ''}")

    def _on_error(self, message: Dict[str, Any]) -> None:
        if message.get("cookie") != self.cookie:
            self._metrics.record_cookie_mismatch()
            return

        in_reply_to = message.get("inReplyTo", "")
        error = ServerReplyError(in_reply_to, message.get("errorMessage", ""))
        self.last_error = error
        logger.error(str(error))

        state = self.session.state
        if in_reply_to == RequestType.HANDSHAKE.value and state is SessionState.HANDSHAKING:
            self.spawn(self.stop())
        elif AWAITED_REPLY_STATES.get(in_reply_to) is state:
            self._abort_chain()

    def _on_signal(self, message: Dict[str, Any]) -> None:
        handler = self._signal_handlers.get(message.get("name"), self._unhandled_signal)
        handler(message)

    def _on_dirty(self, message: Dict[str, Any]) -> None:
        logger.debug("server signal - dirty")
        self.session.configured = False

    def _abort_chain(self) -> None:
        self._set_state(SessionState.IDLE)
        self._end_chain(success=False)
        if self.session.post_configure is not None:
            logger.info("configure failed, pending action dropped")
            self.session.post_configure = None

    def _end_chain(self, success: bool) -> None:
        started, self.session.chain_started = self.session.chain_started, None
        if started is not None:
            self._metrics.record_timing("configure", (time.time() - started) * 1000, success)

    # --- Continuations ---

    def _invoke(self, action: Continuation) -> None:
        result = action()
        if inspect.isawaitable(result):
            self.spawn(result)

    def spawn(self, awaitable: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("background action failed", exc_info=task.exception())

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every continuation spawned so far, and those they spawn."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            _, pending = await asyncio.wait(set(self._tasks), timeout=remaining)
            if pending:
                raise asyncio.TimeoutError()
