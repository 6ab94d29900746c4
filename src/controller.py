"""
Addon Controller - watch-driven reconciliation loop.

Similar to Kubernetes controllers, continuously reconciles desired state with
actual state. Informers turn watch events on addons, their workloads and
their workflows into requests on a work queue, and a bounded pool of workers
runs the reconciler for each request.
"""

import asyncio
import logging
from functools import partial
from typing import Any, Dict, List, Optional

from config import ControllerConfig
from informer import Informer
from kube import KubeClient
from models import ADDON_GROUP, ADDON_PLURAL, ADDON_VERSION, ReconcileResult, Request
from observer import RESOURCE_KINDS
from reconciler import AddonReconciler
from workqueue import WorkQueue

logger = logging.getLogger(__name__)


class Controller:
    """
    Main controller that implements the reconciliation loop.

    Addon events enqueue the addon itself; events on owned objects are
    mapped to their addon through the ownership label.
    """

    def __init__(
        self,
        kube: KubeClient,
        reconciler: AddonReconciler,
        workflow_informer: Informer,
        namespace: str,
        config: Optional[ControllerConfig] = None,
    ):
        self.kube = kube
        self.reconciler = reconciler
        self.namespace = namespace
        self.config = config or ControllerConfig()
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.queue = WorkQueue(
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            jitter_factor=self.config.backoff_jitter_factor,
        )
        self.running = False

        self._shutdown_event = asyncio.Event()
        self._informer_tasks: List[asyncio.Task] = []
        self._worker_tasks: List[asyncio.Task] = []

        self.addon_informer = Informer(
            kube,
            kind="Addon",
            api="custom",
            method="list_namespaced_custom_object",
            args=(ADDON_GROUP, ADDON_VERSION, namespace, ADDON_PLURAL),
            timeout_seconds=self.config.watch_timeout_seconds,
        )
        self.addon_informer.add_handler(self._on_addon_event)

        self.workflow_informer = workflow_informer
        self.workflow_informer.add_handler(partial(self._on_owned_event, "Workflow"))

        self.informers: List[Informer] = [self.addon_informer, self.workflow_informer]
        for kind in RESOURCE_KINDS:
            informer = Informer(
                kube,
                kind=kind.kind,
                api=kind.api,
                method=kind.method,
                args=(namespace,),
                timeout_seconds=self.config.watch_timeout_seconds,
            )
            informer.add_handler(partial(self._on_owned_event, kind.kind))
            self.informers.append(informer)

    # ==================== Event handlers ====================

    def _on_addon_event(self, event_type: str, obj: Dict[str, Any]) -> None:
        metadata = obj.get("metadata") or {}
        request = Request(namespace=metadata.get("namespace", ""), name=metadata.get("name", ""))
        logger.debug(f"Addon {request} {event_type}")
        self.queue.add(request)

    def _on_owned_event(self, kind: str, event_type: str, obj: Dict[str, Any]) -> None:
        for request in self.reconciler.map_object(kind, obj):
            self.queue.add(request)

    # ==================== Lifecycle ====================

    def has_synced(self) -> bool:
        return all(informer.has_synced() for informer in self.informers)

    async def wait_for_cache_sync(self, timeout: Optional[float] = None) -> bool:
        """Wait for every informer to complete its initial list."""
        results = await asyncio.gather(
            *(informer.wait_for_sync(timeout) for informer in self.informers)
        )
        return all(results)

    async def start(self):
        """Start the informers and, once their caches are filled, the workers."""
        logger.info("Starting Addon Manager Controller")
        self.running = True
        self._shutdown_event.clear()

        self._informer_tasks = [
            asyncio.create_task(informer.run(self._shutdown_event))
            for informer in self.informers
        ]

        if not await self.wait_for_cache_sync(self.config.cache_sync_timeout):
            await self.stop()
            raise RuntimeError("Timed out waiting for informer caches to sync")
        logger.info("Informer caches synced")

        self._worker_tasks = [
            asyncio.create_task(self._worker(i))
            for i in range(self.max_concurrent_reconciles)
        ]
        logger.info(f"Started {len(self._worker_tasks)} workers")

        try:
            await asyncio.gather(*self._informer_tasks, *self._worker_tasks)
        except asyncio.CancelledError:
            logger.info("Controller tasks cancelled")
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop the controller gracefully."""
        logger.info("Stopping Addon Manager Controller")
        self.running = False
        self._shutdown_event.set()
        self.queue.shutdown(self.max_concurrent_reconciles)

        # Watches block on the server; cancel rather than wait out their timeout.
        # Workers finish their current request and exit on the queue sentinel.
        for task in self._informer_tasks:
            if not task.done():
                task.cancel()
        self._informer_tasks.clear()

    # ==================== Workers ====================

    async def _worker(self, worker_id: int) -> None:
        logger.debug(f"Worker {worker_id} started")
        while True:
            request = await self.queue.get()
            if request is None:
                break
            try:
                result = await self.reconciler.reconcile(request)
                self._handle_result(request, result)
            finally:
                self.queue.done(request)
        logger.debug(f"Worker {worker_id} stopped")

    def _handle_result(self, request: Request, result: ReconcileResult) -> None:
        """Requeue, retry or forget a request according to its result."""
        if result.error is not None:
            if result.fatal:
                logger.error(f"Dropping {request} after unexpected error: {result.error}")
                self.queue.forget(request)
                return
            delay = self.queue.add_rate_limited(request)
            logger.error(
                f"Reconcile of {request} failed (attempt {self.queue.num_requeues(request)}), "
                f"retrying in {delay:.1f}s: {result.error}"
            )
            return

        self.queue.forget(request)
        if result.requeue_after:
            self.queue.add_after(request, result.requeue_after)
        elif result.requeue:
            self.queue.add(request)
