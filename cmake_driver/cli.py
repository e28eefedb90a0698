"""
Command-line entry point.

    python -m cmake_driver build --source-dir ~/src/app --compiler /usr/bin/gcc

Runs one verb against a fresh CMake server session, then stops the server.
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from cmake_driver.config import DriverConfig
from cmake_driver.controller import CMakeController
from cmake_driver.kits import Kit
from cmake_driver.metrics import get_metrics
from cmake_driver.models import SessionState

console = Console()
logger = logging.getLogger("cmake_driver")

SERVER_VERBS = ("configure", "reconfigure", "build", "clean", "install", "targets")
LOCAL_VERBS = ("nuke", "configurations")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="cmake_driver",
        description="Configure and build CMake projects through the CMake server protocol",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Configure and list the targets of the Debug build
  python -m cmake_driver targets --source-dir ~/src/app --compiler /usr/bin/gcc

  # Build one target in Release
  python -m cmake_driver build --configuration Release --target app --compiler /usr/bin/clang

  # Wipe the build directory
  python -m cmake_driver nuke --build-dir /tmp/app-build
        """,
    )
    parser.add_argument("verb", choices=SERVER_VERBS + LOCAL_VERBS)

    parser.add_argument("--source-dir", default=None, help="CMake project directory (default: cwd)")
    parser.add_argument("--build-dir", default=None, help="Build directory, ${workspaceFolder} is substituted")
    parser.add_argument("--cmake", default=None, help="CMake executable")
    parser.add_argument("--generator", default=None, help="CMake generator (default: Ninja)")
    parser.add_argument("--configuration", default=None, help="Build type (default: first configured)")
    parser.add_argument("--target", default=None, help="Target to build (default: [all])")
    parser.add_argument("--jobs", "-j", type=int, default=None, help="Parallel build jobs")

    kit_group = parser.add_argument_group("Kit")
    kit_group.add_argument("--compiler", default=os.environ.get("CC"), help="Compiler path (default: $CC)")
    kit_group.add_argument("--linker", default=None, help="Linker path")

    parser.add_argument("--timeout", type=float, default=600, help="Seconds to wait for the server")
    parser.add_argument("--yes", "-y", action="store_true", help="Continue when the CMake version is unknown")
    parser.add_argument("--debug", action="store_true", help="Log protocol traffic")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only log warnings and errors")
    return parser.parse_args(argv)


def setup_logging(debug: bool = False, quiet: bool = False) -> None:
    level = logging.DEBUG if debug else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
        force=True,
    )


def build_config(args: argparse.Namespace) -> DriverConfig:
    """Environment configuration, overridden by command-line flags."""
    config = DriverConfig.from_env()
    if args.source_dir:
        config.source_directory = os.path.abspath(os.path.expanduser(args.source_dir))
    if args.build_dir:
        config.build_directory = args.build_dir
    if args.cmake:
        config.cmake_executable = args.cmake
    if args.generator:
        config.generator = args.generator
    if args.jobs:
        config.parallel_jobs = args.jobs
    return config


def make_controller(args: argparse.Namespace, config: DriverConfig) -> CMakeController:
    async def confirm(question: str) -> bool:
        if args.yes:
            return True
        return await asyncio.to_thread(Confirm.ask, f"[yellow]{question}[/yellow]")

    controller = CMakeController(config, confirm=confirm)
    if args.compiler:
        controller.kits.register(Kit("cli", args.compiler, args.linker or ""))
    if args.configuration:
        controller.select_configuration(args.configuration)
    if args.target:
        controller.select_target(args.target)
    return controller


def print_targets(controller: CMakeController) -> None:
    table = Table(title=f"Targets ({controller.settings.get('configuration')})")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    for name in controller.get_targets():
        target = controller.engine.targets.get(name)
        table.add_row(name, target.type.display_name if target else "")
    console.print(table)


async def run_server_verb(args: argparse.Namespace, controller: CMakeController) -> int:
    if not await controller.start():
        return 1

    try:
        state = await controller.engine.wait_for_state(
            SessionState.IDLE, SessionState.DISCONNECTED, timeout=args.timeout
        )
        if state is SessionState.DISCONNECTED:
            console.print(f"[red]CMake server stopped: {controller.engine.last_error}[/red]")
            return 1

        if args.verb in ("configure", "targets"):
            ok = await controller.configure()
        elif args.verb == "reconfigure":
            ok = await controller.reconfigure()
        else:
            ok = await getattr(controller, args.verb)()
        if not ok:
            return 1

        await controller.join(timeout=args.timeout)
    except asyncio.TimeoutError:
        console.print(f"[red]Timed out after {args.timeout}s (state: {controller.engine.state.value})[/red]")
        return 1
    finally:
        await controller.stop()

    if args.verb in ("configure", "reconfigure", "targets"):
        if not controller.is_configured():
            console.print(f"[red]Configure failed: {controller.engine.last_error}[/red]")
            return 1
        if args.verb == "targets":
            print_targets(controller)
        return 0

    result = controller.last_result
    if result is None or not result.ok:
        console.print(f"[red]{args.verb} failed[/red]")
        return 1
    console.print(f"[green]{args.verb} succeeded[/green]")
    return 0


def run_local_verb(args: argparse.Namespace, controller: CMakeController) -> int:
    if args.verb == "configurations":
        for name in controller.get_configurations():
            console.print(name)
        return 0

    stats = controller.nuke()
    if stats["errors"]:
        console.print(f"[red]Could not delete build directory: {stats['errors'][0]}[/red]")
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.debug, args.quiet)

    config = build_config(args)
    for warning in config.validate():
        logger.warning(warning)

    controller = make_controller(args, config)
    try:
        if args.verb in LOCAL_VERBS:
            return run_local_verb(args, controller)
        return asyncio.run(run_server_verb(args, controller))
    except KeyboardInterrupt:
        return 130
    finally:
        if args.debug:
            get_metrics().log_summary(logging.DEBUG)


if __name__ == "__main__":
    sys.exit(main())
