"""
Toolchain kits: a compiler, a linker and the environment to run them in.

Discovering installed compilers is left to the embedding application; kits
are registered explicitly and one of them is selected through the 'kit'
workspace setting.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from cmake_driver.settings import WorkspaceSettings

logger = logging.getLogger(__name__)


@dataclass
class Kit:
    """A named compiler + linker + environment bundle."""
    name: str
    compiler: str
    linker: str
    options: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)


class KitRegistry:
    """The registered kits and the current selection."""

    def __init__(self, settings: WorkspaceSettings):
        self._settings = settings
        self._settings.register("kit")
        self._kits: Dict[str, Kit] = {}

    def register(self, kit: Kit) -> None:
        self._kits[kit.name] = kit
        logger.debug(f"kit registered: {kit.name} ({kit.compiler}, {kit.linker})")

        # a single kit is selected automatically
        if len(self._kits) == 1 and self._settings.get("kit") is None:
            self._settings.set("kit", kit.name)

    def names(self) -> List[str]:
        return list(self._kits)

    def get(self, name: Optional[str]) -> Optional[Kit]:
        if name is None:
            return None
        return self._kits.get(name)

    def selected(self) -> Optional[Kit]:
        """The kit named by the 'kit' setting, None when unset or unknown."""
        return self.get(self._settings.get("kit"))
