"""
CMake generators known to the driver.

The registry starts with the platform defaults and is refreshed with the
generator list CMake reports in its 'globalSettings' capabilities.
"""

import logging
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Native build tool flags passed after '--' when building
VISUAL_STUDIO_OPTIONS = ["/nologo", "/verbosity:quiet"]


@dataclass
class Generator:
    """A CMake generator and the native build tool options it needs."""
    name: str
    options: List[str] = field(default_factory=list)


def default_options(name: str) -> List[str]:
    if name.startswith("Visual Studio"):
        return list(VISUAL_STUDIO_OPTIONS)
    return []


def platform_generators(platform: str = None) -> List[Generator]:
    """Generators supported when the server did not report any."""
    platform = platform or sys.platform
    generators = []
    if platform == "win32":
        generators.append(Generator("Visual Studio 15 2017 Win64", list(VISUAL_STUDIO_OPTIONS)))
    generators.append(Generator("Ninja"))
    return generators


class GeneratorRegistry:
    """Known generators, keyed by name."""

    def __init__(self, platform: str = None):
        self._platform = platform
        self._generators: Dict[str, Generator] = {
            g.name: g for g in platform_generators(platform)
        }

    def update_capabilities(self, capabilities: Dict[str, Any]) -> None:
        """
        Refresh the registry from a 'globalSettings' reply's capabilities.

        Args:
            capabilities: The raw 'capabilities' object. Its 'generators'
                entry lists {"name": ..., "extraGenerators": [...]} objects.
        """
        reported = []
        for entry in (capabilities or {}).get("generators", []):
            name = entry.get("name") if isinstance(entry, dict) else None
            if name:
                reported.append(Generator(name, default_options(name)))

        if not reported:
            logger.debug("server reported no generator, keeping platform defaults")
            reported = platform_generators(self._platform)

        self._generators = {g.name: g for g in reported}
        logger.debug(f"generators: {', '.join(self._generators)}")

    def names(self) -> List[str]:
        return list(self._generators)

    def selected(self, name: Optional[str]) -> Optional[Generator]:
        """The generator called `name`, None when unknown."""
        if name is None:
            return None
        return self._generators.get(name)
