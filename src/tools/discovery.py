"""Plugin discovery sources.

A source enumerates candidate capability bundles. It never registers
anything itself; the registry validates and registers what it returns.
"""

import importlib
import pkgutil
from abc import ABC, abstractmethod
from typing import Any, Iterable

from shared.logging import get_logger
from shared.models import Plugin

logger = get_logger(__name__)


class PluginSource(ABC):
    """Something that can enumerate capability bundles."""

    name: str = "source"

    @abstractmethod
    def discover(self, refresh: bool = False) -> list[Any]:
        """
        Enumerate candidate plugins.

        Args:
            refresh: Re-read the underlying definitions instead of reusing
                anything cached (used by reloads)

        Returns:
            Candidate objects; the registry validates each one
        """
        pass


class StaticPluginSource(PluginSource):
    """A fixed list of plugins, for embedding without discovery."""

    def __init__(self, plugins: Iterable[Any], name: str = "static") -> None:
        self.name = name
        self._plugins = list(plugins)

    def discover(self, refresh: bool = False) -> list[Any]:
        return list(self._plugins)


class PackagePluginSource(PluginSource):
    """
    Discovers plugins from the modules of an importable package.

    Each public module of the package may expose a module-level attribute
    (``plugin`` by default) holding either a Plugin or a zero-argument
    factory returning one. Modules are imported by package name only.
    """

    def __init__(self, package: str = "plugins", attribute: str = "plugin") -> None:
        self.package = package
        self.attribute = attribute
        self.name = f"package:{package}"

    def discover(self, refresh: bool = False) -> list[Any]:
        package = importlib.import_module(self.package)
        search_path = getattr(package, "__path__", None)
        if search_path is None:
            logger.warning("Plugin source is not a package", package=self.package)
            return []

        candidates: list[Any] = []

        for module_info in sorted(pkgutil.iter_modules(search_path), key=lambda m: m.name):
            if module_info.name.startswith("_"):
                continue

            module_name = f"{self.package}.{module_info.name}"
            try:
                module = importlib.import_module(module_name)
                if refresh:
                    module = importlib.reload(module)
            except Exception as e:
                logger.error("Failed to import plugin module", module=module_name, error=str(e))
                continue

            candidate = getattr(module, self.attribute, None)
            if candidate is None:
                logger.debug("Module exposes no plugin", module=module_name)
                continue

            if callable(candidate) and not isinstance(candidate, Plugin):
                try:
                    candidate = candidate()
                except Exception as e:
                    logger.error("Plugin factory failed", module=module_name, error=str(e))
                    continue

            candidates.append(candidate)

        logger.info("Discovered plugin candidates", package=self.package, count=len(candidates))
        return candidates
