"""
Version Cache - process-wide registry of installed packages.

Maps package name -> package version -> the addon providing it. Shared by
every in-flight reconcile, so all access goes through a lock. The cache is
never persisted; after a restart it is repopulated by reconcile traffic.
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from models import Addon, Phase

logger = logging.getLogger(__name__)


class DependencyState(Enum):
    """Whether a required package is available."""

    SATISFIED = "satisfied"
    PENDING = "pending"
    MISSING = "missing"


@dataclass
class Version:
    """A package version and the addon that provides it."""

    name: str
    namespace: str
    pkg_name: str
    pkg_version: str
    pkg_deps: Dict[str, str] = field(default_factory=dict)
    phase: Optional[Phase] = None

    @classmethod
    def from_addon(cls, addon: Addon) -> "Version":
        return cls(
            name=addon.name,
            namespace=addon.namespace,
            pkg_name=addon.spec.pkg_name,
            pkg_version=addon.spec.pkg_version,
            pkg_deps=dict(addon.spec.pkg_deps),
            phase=addon.get_install_status(),
        )


class VersionCache:
    """Thread-safe package version registry."""

    def __init__(self):
        self._lock = threading.RLock()
        self._versions: Dict[str, Dict[str, Version]] = {}

    def add_version(self, version: Version) -> None:
        """Insert or update the entry for a package version."""
        with self._lock:
            self._versions.setdefault(version.pkg_name, {})[version.pkg_version] = (
                copy.deepcopy(version)
            )

    def get_version(self, pkg_name: str, pkg_version: str) -> Optional[Version]:
        with self._lock:
            version = self._versions.get(pkg_name, {}).get(pkg_version)
            return copy.deepcopy(version) if version else None

    def get_versions(self, pkg_name: str) -> Dict[str, Version]:
        with self._lock:
            return copy.deepcopy(self._versions.get(pkg_name, {}))

    def get_all_versions(self) -> List[Version]:
        with self._lock:
            return [
                copy.deepcopy(v)
                for versions in self._versions.values()
                for v in versions.values()
            ]

    def has_version_name(self, name: str) -> Tuple[bool, Optional[Version]]:
        """
        Look up the package entry owned by an addon.

        Args:
            name: Addon name

        Returns:
            Tuple of (found, version)
        """
        with self._lock:
            for versions in self._versions.values():
                for version in versions.values():
                    if version.name == name:
                        return True, copy.deepcopy(version)
        return False, None

    def remove_version(self, pkg_name: str, pkg_version: str) -> None:
        with self._lock:
            versions = self._versions.get(pkg_name)
            if versions is None:
                return
            versions.pop(pkg_version, None)
            if not versions:
                del self._versions[pkg_name]

    def remove_versions(self, pkg_name: str) -> None:
        with self._lock:
            self._versions.pop(pkg_name, None)

    def remove_addon(self, name: str, namespace: Optional[str] = None) -> None:
        """Remove every entry owned by the named addon."""
        with self._lock:
            for pkg_name in list(self._versions):
                versions = self._versions[pkg_name]
                for pkg_version in list(versions):
                    owner = versions[pkg_version]
                    if owner.name == name and namespace in (None, owner.namespace):
                        del versions[pkg_version]
                        logger.debug(
                            f"Removed {pkg_name}:{pkg_version} owned by {name}"
                        )
                if not versions:
                    del self._versions[pkg_name]

    def check_dependency(
        self, pkg_name: str, pkg_version: str
    ) -> Tuple[DependencyState, Optional[Version]]:
        """
        Classify a required package version.

        Returns:
            Tuple of (state, providing version if one exists)
        """
        version = self.get_version(pkg_name, pkg_version)
        if version is None:
            return DependencyState.MISSING, None

        if version.phase is Phase.SUCCEEDED:
            return DependencyState.SATISFIED, version
        if version.phase in (None, Phase.PENDING, Phase.RUNNING):
            return DependencyState.PENDING, version
        return DependencyState.MISSING, version
