"""
Connection to the CMake server process.

Owns exactly one `cmake -E server` subprocess and the local endpoint (Unix
domain socket or Windows named pipe) it listens on. CMake creates the
endpoint some time after it starts, so connecting is retried at a short
interval for as long as the process is alive.
"""

import asyncio
import logging
import os
import sys
from typing import Any, Callable, Dict, List, Optional

import psutil

from cmake_driver.codec import FrameCodec
from cmake_driver.config import DriverConfig, DEFAULT_CONFIG
from cmake_driver.exceptions import (
    NotConnectedError,
    ServerProcessDiedError,
    ServerStartupError,
)
from cmake_driver.metrics import get_metrics
from cmake_driver.models import ProcessState

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536

ExitCallback = Callable[[int, Optional[int], Optional[ServerProcessDiedError]], None]


class ServerTransport:
    """
    Subprocess + endpoint pair of one CMake server session.

    Usage:
        transport = ServerTransport(FrameCodec(cookie))
        await transport.start("cmake", ["-E", "server", "--experimental", f"--pipe={pipe}"],
                              env, pipe, on_connected, on_message, on_exit)
        transport.send(codec.encode({"type": "handshake", ...}))
        await transport.stop()
    """

    def __init__(self, codec: FrameCodec, config: DriverConfig = None):
        self.codec = codec
        self.config = config or DEFAULT_CONFIG
        self.process: Optional[asyncio.subprocess.Process] = None
        self.process_state = ProcessState.STOPPED
        self.pipe_name: Optional[str] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._was_connected = False
        self._stderr_tail = bytearray()
        self._exit_task: Optional[asyncio.Task] = None
        self._tasks: set = set()
        self._on_connected: Optional[Callable[[], None]] = None
        self._on_message: Optional[Callable[[Dict[str, Any]], None]] = None
        self._on_exit: Optional[ExitCallback] = None
        self._metrics = get_metrics()

    @property
    def pid(self) -> Optional[int]:
        """Server process id, None unless the process is running."""
        if self.process is None or self.process_state is not ProcessState.RUNNING:
            return None
        return self.process.pid

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    @property
    def stderr_tail(self) -> str:
        """The last bytes the server wrote to its error stream."""
        return self._stderr_tail.decode("utf-8", errors="replace").strip()

    async def start(self, executable: str, args: List[str], env: Dict[str, str],
                    pipe_name: str,
                    on_connected: Callable[[], None],
                    on_message: Callable[[Dict[str, Any]], None],
                    on_exit: ExitCallback) -> int:
        """
        Spawn the server and begin connecting to its endpoint in the background.

        Returns:
            The server process id.

        Raises:
            ServerStartupError: The executable could not be started.
        """
        if self.process_state is not ProcessState.STOPPED:
            logger.debug("server process already running")
            return self.process.pid

        self.pipe_name = pipe_name
        self._on_connected = on_connected
        self._on_message = on_message
        self._on_exit = on_exit
        self._was_connected = False
        self._stderr_tail.clear()
        self.codec.reset()
        self._remove_stale_endpoint()

        kwargs = {}
        if sys.platform != "win32":
            kwargs["start_new_session"] = True

        logger.info(" ".join([executable] + list(args)))
        try:
            process = await asyncio.create_subprocess_exec(
                executable, *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                **kwargs,
            )
        except OSError as e:
            raise ServerStartupError(f"{executable}: {e}") from e

        self.process = process
        self.process_state = ProcessState.RUNNING
        self._metrics.record_process_start()
        logger.info(f"server started with pid {process.pid} using named pipe {pipe_name}")

        self._spawn(self._drain_stdout(process))
        stderr_task = self._spawn(self._drain_stderr(process))
        self._spawn(self._connect(process))
        self._exit_task = self._spawn(self._watch_exit(process, stderr_task))
        return process.pid

    def send(self, data: bytes) -> None:
        """Write an encoded frame to the endpoint."""
        if not self.connected:
            raise NotConnectedError()
        self._writer.write(data)

    async def stop(self) -> None:
        """
        Terminate the server and close the endpoint. Safe to call repeatedly.

        The lifecycle is switched to STOPPING before any signal is sent, so the
        exit that follows is reported as intentional.
        """
        process = self.process
        if process is None:
            self._close_endpoint()
            await self._cancel_tasks()
            return
        if self.process_state is not ProcessState.RUNNING:
            logger.debug("server already stopping")
            return

        self.process_state = ProcessState.STOPPING
        logger.info("Stopping CMake server...")
        self._close_endpoint()

        self._signal_tree(process.pid, kill=False)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.sigterm_timeout)
        except asyncio.TimeoutError:
            logger.warning("CMake server did not respond to SIGTERM, sending SIGKILL")
            self._signal_tree(process.pid, kill=True)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.config.sigkill_timeout)
            except asyncio.TimeoutError:
                logger.error(f"Could not kill CMake server (pid {process.pid})")

        if self._exit_task is not None and process.returncode is not None:
            await self._exit_task
        await self._cancel_tasks()

    # --- Background Tasks ---

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)

    async def _connect(self, process: asyncio.subprocess.Process) -> None:
        """Poll the endpoint until it accepts the connection or the server exits."""
        interval = self.config.connect_retry_interval
        while self.process is process and self.process_state is ProcessState.RUNNING:
            logger.debug("cmake pipe - connect")
            try:
                reader, writer = await self._open_endpoint(self.pipe_name)
            except OSError as e:
                logger.debug(f"cmake pipe - error ({type(e).__name__})")
                await asyncio.sleep(interval)
                continue

            if self.process_state is not ProcessState.RUNNING:
                writer.close()
                return

            self._writer = writer
            self._was_connected = True
            logger.debug("cmake pipe - connected")
            self._on_connected()
            await self._read_loop(reader)
            return

    async def _open_endpoint(self, name: str):
        if sys.platform == "win32":
            loop = asyncio.get_running_loop()
            reader = asyncio.StreamReader()
            protocol = asyncio.StreamReaderProtocol(reader)
            transport, _ = await loop.create_pipe_connection(lambda: protocol, name)
            writer = asyncio.StreamWriter(transport, protocol, reader, loop)
            return reader, writer
        return await asyncio.open_unix_connection(name)

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                data = await reader.read(READ_CHUNK_SIZE)
                if not data:
                    break
                for message in self.codec.feed(data):
                    self._deliver(message)
        except (ConnectionError, OSError) as e:
            logger.debug(f"cmake pipe - read error: {e}")
        logger.debug("cmake pipe - closed")
        # later sends raise NotConnectedError
        self._close_endpoint()

    def _deliver(self, message: Dict[str, Any]) -> None:
        try:
            self._on_message(message)
        except Exception:
            logger.exception(f"Error while handling server message {message.get('type')}")

    async def _drain_stdout(self, process: asyncio.subprocess.Process) -> None:
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            logger.debug(f"server stdout - {line.decode('utf-8', errors='replace').rstrip()}")

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        limit = self.config.stderr_tail_bytes
        while True:
            chunk = await process.stderr.read(4096)
            if not chunk:
                break
            self._stderr_tail.extend(chunk)
            if len(self._stderr_tail) > limit:
                del self._stderr_tail[:len(self._stderr_tail) - limit]

    async def _watch_exit(self, process: asyncio.subprocess.Process,
                          stderr_task: asyncio.Task) -> None:
        pid = process.pid
        code = await process.wait()
        # let the error stream drain so the reported tail is complete
        await asyncio.wait({stderr_task}, timeout=1.0)

        error = None
        if self.process_state is ProcessState.STOPPING:
            logger.info("cmake server stopped")
            self._metrics.record_process_stop()
        else:
            error = ServerProcessDiedError(code, self.stderr_tail, connected=self._was_connected)
            logger.error(str(error))
            self._metrics.record_process_crash()

        self._close_endpoint()
        self.process_state = ProcessState.STOPPED
        self.process = None
        if self._on_exit is not None:
            self._on_exit(pid, code, error)

    # --- Helpers ---

    def _close_endpoint(self) -> None:
        if self._writer is not None:
            self._writer.close()
            self._writer = None

    def _remove_stale_endpoint(self) -> None:
        # a socket file left behind by a killed server makes the new one fail to bind
        if sys.platform != "win32" and self.pipe_name and os.path.exists(self.pipe_name):
            try:
                os.unlink(self.pipe_name)
                logger.debug(f"removed stale endpoint {self.pipe_name}")
            except OSError as e:
                logger.warning(f"Could not remove stale endpoint {self.pipe_name}: {e}")

    def _signal_tree(self, pid: int, kill: bool) -> None:
        """Terminate (or kill) the server and any process it spawned."""
        try:
            parent = psutil.Process(pid)
            processes = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return
        for proc in processes:
            try:
                if kill:
                    proc.kill()
                else:
                    proc.terminate()
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied as e:
                logger.warning(f"Cannot signal process {proc.pid}: {e}")
