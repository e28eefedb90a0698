"""
Target extraction from the CMake server codemodel reply.

The codemodel is shaped as configurations -> projects -> targets (see
cmake-server(7)). Only the configuration matching the active build type is
used; every parse produces a brand new TargetModel snapshot.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from cmake_driver.exceptions import (
    ConfigurationNotFoundError,
    InvalidCodemodelError,
    NoTargetsError,
)
from cmake_driver.models import ALL_TARGET, CodemodelStatus, Target, TargetType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TargetModel:
    """
    Read-only snapshot of the buildable targets of one configuration.
    """
    targets: Tuple[Target, ...] = ()
    configuration: Optional[str] = None
    status: CodemodelStatus = CodemodelStatus.NOT_PARSED
    unsupported_count: int = 0
    _index: Dict[str, Target] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_index", {t.name: t for t in self.targets})

    def __len__(self) -> int:
        return len(self.targets)

    def __contains__(self, name: str) -> bool:
        return name in self._index

    def names(self) -> List[str]:
        return [t.name for t in self.targets]

    def get(self, name: str) -> Optional[Target]:
        return self._index.get(name)

    def target_names(self) -> List[str]:
        """Names offered to callers, the build-everything pseudo-target first."""
        return [ALL_TARGET] + self.names()


EMPTY_MODEL = TargetModel()


def parse_codemodel(codemodel: Dict[str, Any], configuration: str) -> TargetModel:
    """
    Build a TargetModel from a codemodel reply.

    Args:
        codemodel: The 'codemodel' reply payload.
        configuration: The active build type (matched case-insensitively).

    Returns:
        The parsed snapshot, with status OK.

    Raises:
        InvalidCodemodelError: The payload has no 'configurations' list.
        ConfigurationNotFoundError: No configuration matches.
        NoTargetsError: The configuration exists but has no usable target.
            The exception carries the (empty) parsed snapshot in `model`.
    """
    logger.debug("parsing codemodel")

    configurations = codemodel.get("configurations")
    if not isinstance(configurations, list):
        raise InvalidCodemodelError("no 'configurations' field")

    wanted = (configuration or "").lower()
    found_configuration = False
    targets: Dict[str, Target] = {}
    unsupported = 0

    for config in configurations:
        if not isinstance(config, dict) or str(config.get("name", "")).lower() != wanted:
            continue

        logger.debug(f"  configuration {config.get('name')}")
        found_configuration = True

        projects = config.get("projects")
        if not isinstance(projects, list):
            logger.debug("    doesn't have a 'projects' list, ignoring")
            continue

        for project in projects:
            if not isinstance(project, dict):
                logger.debug(f"    invalid project entry {project!r}, ignoring")
                continue
            logger.debug(f"    project {project.get('name')}")

            project_targets = project.get("targets")
            if not isinstance(project_targets, list):
                logger.debug("      doesn't have a 'targets' list, ignoring")
                continue

            for target in project_targets:
                if not isinstance(target, dict):
                    logger.debug(f"        invalid target entry {target!r}, ignoring")
                    continue
                name = target.get("name")
                if not isinstance(name, str):
                    logger.debug("        invalid target, missing 'name' field")
                    continue

                target_type = TargetType.from_codemodel(target.get("type"))
                if target_type is TargetType.UNSUPPORTED:
                    logger.debug(f"        unsupported target type {target.get('type')}")
                    unsupported += 1
                    continue

                targets[name] = Target(name, target_type)

    if not found_configuration:
        available = [c.get("name") for c in configurations if isinstance(c, dict)]
        raise ConfigurationNotFoundError(configuration, available)

    if not targets:
        empty = TargetModel(
            configuration=configuration,
            status=CodemodelStatus.NO_TARGETS,
            unsupported_count=unsupported,
        )
        raise NoTargetsError(configuration, model=empty, unsupported=unsupported)

    return TargetModel(
        targets=tuple(targets.values()),
        configuration=configuration,
        status=CodemodelStatus.OK,
        unsupported_count=unsupported,
    )
