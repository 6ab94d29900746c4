"""
Addon Updater - persists addon status and finalizers.

Every status write also refreshes the version cache, so dependents see the
addon's latest install phase.
"""

import logging

from kubernetes_asyncio.client import ApiException

from kube import KubeClient, is_not_found
from models import FINALIZER_NAME, Addon
from version_cache import Version, VersionCache

logger = logging.getLogger(__name__)


class AddonUpdater:
    """Writes addon state back to the cluster."""

    def __init__(self, kube: KubeClient, cache: VersionCache):
        self.kube = kube
        self.cache = cache

    async def update_status(self, addon: Addon) -> None:
        """
        Replace the addon status subresource.

        An addon that is gone already is ignored. Addons being deleted are
        kept out of the version cache.
        """
        try:
            await self.kube.replace_addon_status(
                addon.namespace, addon.name, addon.status_dict()
            )
        except ApiException as e:
            if is_not_found(e):
                logger.info(f"Addon {addon.namespace}/{addon.name} is gone, status not written")
                return
            raise

        if not addon.being_deleted():
            self.add_to_cache(addon)

    def add_to_cache(self, addon: Addon) -> None:
        """
        Record the package version the addon provides.

        Entries left from an earlier pkgVersion of the same addon are dropped.
        A version already provided by another addon is left to that addon.
        """
        self.cache.remove_addon(addon.name, addon.namespace)
        if not addon.spec.pkg_name or not addon.spec.pkg_version:
            return
        existing = self.cache.get_version(addon.spec.pkg_name, addon.spec.pkg_version)
        if existing is not None and (existing.name, existing.namespace) != (
            addon.name,
            addon.namespace,
        ):
            # Package is provided by another addon; this one is a rejected duplicate
            return
        self.cache.add_version(Version.from_addon(addon))

    def remove_from_cache(self, addon: Addon) -> None:
        self.cache.remove_addon(addon.name, addon.namespace)

    async def ensure_finalizer(self, addon: Addon, finalizer: str = FINALIZER_NAME) -> None:
        """Add the finalizer to an addon that is not being deleted."""
        if addon.being_deleted() or addon.has_finalizer(finalizer):
            return
        addon.add_finalizer(finalizer)
        await self.kube.set_addon_finalizers(
            addon.namespace, addon.name, addon.metadata.finalizers
        )
        logger.info(f"Added finalizer to addon {addon.namespace}/{addon.name}")

    async def remove_finalizer(self, addon: Addon, finalizer: str = FINALIZER_NAME) -> None:
        """Remove the finalizer, letting the API server delete the addon."""
        if not addon.has_finalizer(finalizer):
            return
        addon.remove_finalizer(finalizer)
        try:
            await self.kube.set_addon_finalizers(
                addon.namespace, addon.name, addon.metadata.finalizers
            )
        except ApiException as e:
            if is_not_found(e):
                return
            addon.add_finalizer(finalizer)
            raise
        logger.info(f"Removed finalizer from addon {addon.namespace}/{addon.name}")
