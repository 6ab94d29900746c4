"""
Addon Reconciler - one reconcile pass for one addon.

Loads the addon, routes it to deletion or to the checksum gate and the
lifecycle state machine, then persists its status. Every outcome is
returned as a ReconcileResult for the dispatch layer to act on.
"""

import logging
from typing import Any, Dict, List, Optional

from checksum import ChecksumGate
from config import ControllerConfig
from errors import AddonError
from events import EventRecorder
from informer import Informer
from kube import API_ERRORS, KubeClient
from lifecycle import AddonLifecycle
from models import OWN_LABEL, Addon, Phase, ReconcileResult, Request
from observer import ResourceObserver
from updater import AddonUpdater
from version_cache import VersionCache
from workflows import WorkflowLifecycle

logger = logging.getLogger(__name__)

# Failures retried with backoff; anything else is unexpected
RETRYABLE_ERRORS = (AddonError,) + API_ERRORS

STATUS_UPDATE_REQUEUE = 1.0


class AddonReconciler:
    """Reconciles Addon resources."""

    def __init__(
        self,
        kube: KubeClient,
        cache: VersionCache,
        workflow_informer: Informer,
        recorder: EventRecorder,
        config: Optional[ControllerConfig] = None,
    ):
        self.kube = kube
        self.cache = cache
        self.workflow_informer = workflow_informer
        self.recorder = recorder
        self.config = config or ControllerConfig()

        self.updater = AddonUpdater(kube, cache)
        self.gate = ChecksumGate()
        self.lifecycle = AddonLifecycle(
            kube,
            cache,
            recorder,
            self.updater,
            ResourceObserver(kube),
            ttl_seconds=self.config.addon_ttl,
        )

    async def reconcile(self, request: Request) -> ReconcileResult:
        """
        Reconcile the addon named by a request.

        Never raises; failures are reported through the result.
        """
        logger.info(f"Starting reconcile for addon {request}")

        try:
            obj = await self.kube.get_addon(request.namespace, request.name)
        except RETRYABLE_ERRORS as e:
            logger.error(f"Failed to get addon {request}: {e}")
            return ReconcileResult(error=e)

        if obj is None:
            logger.info(f"Addon {request} not found, removing from cache")
            self.cache.remove_addon(request.name, request.namespace)
            return ReconcileResult()

        try:
            addon = Addon.from_dict(obj)
            workflows = WorkflowLifecycle(
                self.kube, self.workflow_informer, addon, self.recorder
            )
            if addon.being_deleted():
                return await self._reconcile_deletion(addon, workflows)
            return await self._reconcile_addon(addon, workflows)
        except Exception as e:
            logger.error(f"Unexpected error reconciling addon {request}: {e}", exc_info=True)
            return ReconcileResult(error=e, fatal=True)

    async def _reconcile_addon(
        self, addon: Addon, workflows: WorkflowLifecycle
    ) -> ReconcileResult:
        ident = f"{addon.namespace}/{addon.name}"

        try:
            if await self.gate.evaluate(addon, workflows):
                result = ReconcileResult(requeue=True)
            else:
                result = await self.lifecycle.process(addon, workflows)
        except RETRYABLE_ERRORS as e:
            logger.error(f"Failed reconciling addon {ident}: {e}")
            result = ReconcileResult(error=e)

        try:
            await self.updater.update_status(addon)
        except RETRYABLE_ERRORS as e:
            logger.error(f"Failed updating status for addon {ident}: {e}")
            return ReconcileResult(requeue_after=STATUS_UPDATE_REQUEUE, error=e)

        return result

    async def _reconcile_deletion(
        self, addon: Addon, workflows: WorkflowLifecycle
    ) -> ReconcileResult:
        ident = f"{addon.namespace}/{addon.name}"

        if not addon.has_finalizer():
            # Never validated, nothing was installed
            self.updater.remove_from_cache(addon)
            return ReconcileResult()

        installed = addon.get_install_status()
        if installed is None or not installed.deleting():
            addon.set_install_status(Phase.DELETING)
            try:
                await self.updater.update_status(addon)
            except RETRYABLE_ERRORS as e:
                logger.error(f"Failed updating status for addon {ident}: {e}")
                return ReconcileResult(error=e)
            logger.info(f"Addon {ident} is being deleted, requeueing")
            return ReconcileResult(requeue=True)

        try:
            result = await self.lifecycle.finalize(addon, workflows)
        except RETRYABLE_ERRORS as e:
            reason = f"Addon {ident} could not be finalized. {e}"
            logger.error(reason)
            await self.recorder.warning(addon, "Failed", reason)
            result = ReconcileResult(error=e)

        if addon.has_finalizer():
            try:
                await self.updater.update_status(addon)
            except RETRYABLE_ERRORS as e:
                logger.error(f"Failed updating status for addon {ident}: {e}")
                if result.success:
                    return ReconcileResult(requeue_after=STATUS_UPDATE_REQUEUE, error=e)

        return result

    # ==================== Watch mapping ====================

    def requests_from_labels(self, labels: Optional[Dict[str, str]]) -> List[Request]:
        """
        Map an owned object's labels to the addon that owns it.

        Objects without the ownership label, or naming an addon that is not
        in the version cache, map to nothing.
        """
        name = (labels or {}).get(OWN_LABEL, "").strip()
        if not name:
            return []
        found, version = self.cache.has_version_name(name)
        if not found:
            return []
        return [Request(namespace=version.namespace, name=version.name)]

    def map_object(self, kind: str, obj: Dict[str, Any]) -> List[Request]:
        """Map a watched object of any kind to reconcile requests."""
        metadata = obj.get("metadata") or {}
        requests = self.requests_from_labels(metadata.get("labels"))
        for request in requests:
            logger.debug(f"{kind} {metadata.get('name')} maps to addon {request}")
        return requests
