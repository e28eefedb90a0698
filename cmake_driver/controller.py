"""
Build controller: the verbs the rest of an application calls.

Every verb that needs a configured build tree goes through
`ProtocolEngine.run_when_configured`, so calling `build()` on a session that
was never configured (or was invalidated by a 'dirty' signal) first runs the
configure chain, then the build.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from cmake_driver.cleanup import delete_cache_file, nuke_build_directory
from cmake_driver.config import DriverConfig
from cmake_driver.engine import ConfirmCallback, ProtocolEngine
from cmake_driver.exceptions import CMakeDriverError, NoKitSelectedError
from cmake_driver.generators import GeneratorRegistry
from cmake_driver.kits import KitRegistry
from cmake_driver.metrics import get_metrics
from cmake_driver.models import ALL_TARGET, SessionState
from cmake_driver.runner import (
    BuildInvocation,
    RunResult,
    build_invocation,
    check_cmake_version,
    clean_invocation,
    install_invocation,
    run_command,
)
from cmake_driver.settings import WorkspaceSettings
from cmake_driver.transport import ServerTransport

logger = logging.getLogger(__name__)

# Settings whose change requires a new server with a fresh cache
RESTART_SETTINGS = frozenset({"cmake_executable", "generator"})
# Settings that only require the next build to configure again
RECONFIGURE_SETTINGS = frozenset({"configure_arguments", "install_directory"})


class CMakeController:
    """
    Facade over one CMake server session.

    Usage:
        controller = CMakeController(DriverConfig(source_directory="/src/app"))
        controller.kits.register(Kit("gcc", "/usr/bin/gcc", "/usr/bin/ld"))
        await controller.start()
        await controller.build()
        await controller.join()
        print(controller.last_result)
        await controller.stop()
    """

    def __init__(self, config: DriverConfig = None,
                 settings: WorkspaceSettings = None,
                 kits: KitRegistry = None,
                 generators: GeneratorRegistry = None,
                 transport: ServerTransport = None,
                 confirm: Optional[ConfirmCallback] = None,
                 executor: Callable = run_command,
                 version_check: Callable = check_cmake_version,
                 on_output: Optional[Callable[[str], None]] = None):
        self.config = config or DriverConfig()
        self.settings = settings or WorkspaceSettings()
        self.kits = kits or KitRegistry(self.settings)
        self.generators = generators or GeneratorRegistry()
        self.engine = ProtocolEngine(
            self.config, self.kits, self.generators, self.settings,
            transport=transport, confirm=confirm, version_check=version_check,
        )
        self.last_result: Optional[RunResult] = None
        self._executor = executor
        self._on_output = on_output
        self._metrics = get_metrics()

        self.settings.on("kit", self._on_kit_changed)
        self.settings.on("configuration", self._on_configuration_changed)

    # --- Session ---

    async def start(self) -> bool:
        """Start the server. Startup errors are logged and return False."""
        try:
            await self.engine.start()
        except CMakeDriverError as e:
            logger.error(str(e))
            return False
        return True

    async def stop(self) -> None:
        await self.engine.stop()

    async def restart(self, delete_cache: bool = False) -> bool:
        await self.engine.stop()
        if delete_cache:
            delete_cache_file(self.config.resolved_build_directory, self.config.cache_filename)
        return await self.start()

    async def join(self, timeout: Optional[float] = None) -> None:
        """
        Wait until no configure chain is in flight and every build / clean /
        install started so far has finished.
        """
        await self.engine.wait_for_state(SessionState.IDLE, SessionState.DISCONNECTED,
                                         timeout=timeout)
        await self.engine.drain(timeout)

    # --- Verbs ---

    async def configure(self, clean_cache: bool = False) -> bool:
        return self.engine.configure(clean_cache)

    async def reconfigure(self) -> bool:
        """Configure from scratch, deleting the cache first."""
        return self.engine.configure(True)

    async def build(self) -> bool:
        return self.engine.run_when_configured(self._build)

    async def clean(self) -> bool:
        return self.engine.run_when_configured(self._clean)

    async def install(self) -> bool:
        return self.engine.run_when_configured(self._install)

    def nuke(self, dry_run: bool = False) -> Dict[str, Any]:
        """Delete the whole build directory."""
        return nuke_build_directory(self.config.resolved_build_directory, dry_run=dry_run)

    async def _build(self) -> Optional[RunResult]:
        logger.info("Building...")
        generator = self.generators.selected(self.config.generator)
        target = self.settings.get("target")
        return await self._execute(
            lambda kit: build_invocation(self.config, kit, generator, target)
        )

    async def _clean(self) -> Optional[RunResult]:
        logger.info("Cleaning...")
        return await self._execute(lambda kit: clean_invocation(self.config, kit))

    async def _install(self) -> Optional[RunResult]:
        logger.info("Installing...")
        return await self._execute(lambda kit: install_invocation(self.config, kit))

    async def _execute(self, make_invocation: Callable) -> Optional[RunResult]:
        kit = self.kits.selected()
        if kit is None:
            logger.info(str(NoKitSelectedError(self.settings.get("kit"))))
            return None

        invocation: BuildInvocation = make_invocation(kit)
        with self._metrics.timer(invocation.action):
            result = await self._executor(
                invocation.program, invocation.args,
                env=invocation.env, on_line=self._log_output,
            )
        self.last_result = result

        if result.ok:
            logger.info(f"{invocation.action} succeeded")
        elif result.error:
            logger.error(f"{invocation.action} failed: {result.error}")
        else:
            logger.error(f"{invocation.action} failed with exit code {result.code}")
        return result

    def _log_output(self, line: str) -> None:
        logger.info(line)
        if self._on_output is not None:
            self._on_output(line)

    # --- Queries ---

    def get_targets(self) -> List[str]:
        return self.engine.get_targets()

    def get_configurations(self) -> List[str]:
        return list(self.config.configurations)

    def is_configured(self) -> bool:
        return self.engine.is_configured()

    def select_configuration(self, name: str) -> None:
        self.settings.set("configuration", name)

    def select_target(self, name: Optional[str]) -> None:
        self.settings.set("target", name or ALL_TARGET)

    # --- Setting Changes ---

    async def update_config(self, **changes: Any) -> List[str]:
        """
        Apply configuration changes and react the way each one requires.

        Returns:
            The names of the settings that actually changed.

        Raises:
            AttributeError: An unknown setting name was given.
        """
        for name in changes:
            if not hasattr(self.config, name):
                raise AttributeError(f"DriverConfig has no setting '{name}'")

        previous_build_directory = self.config.resolved_build_directory
        changed = [name for name, value in changes.items() if getattr(self.config, name) != value]
        for name in changed:
            setattr(self.config, name, changes[name])
        if not changed:
            return changed

        logger.debug(f"settings changed: {', '.join(changed)}")
        if "build_directory" in changed:
            logger.info("Build directory changed, restarting CMake server...")
            await self.engine.stop()
            nuke_build_directory(previous_build_directory)
            await self.start()
        elif RESTART_SETTINGS.intersection(changed):
            logger.info("CMake server settings changed, restarting...")
            await self.restart(delete_cache=True)
        elif RECONFIGURE_SETTINGS.intersection(changed):
            self.engine.invalidate()
        return changed

    def _on_kit_changed(self, kit_name: Optional[str]) -> None:
        if self.engine.state is SessionState.DISCONNECTED:
            return
        logger.info(f"Kit changed to {kit_name}, restarting CMake server...")
        self.engine.spawn(self.restart(delete_cache=True))

    def _on_configuration_changed(self, configuration: str) -> None:
        # the codemodel only describes the build type it was configured with
        self.engine.invalidate()
