"""
Informer - a list+watch synchronized local view of cluster objects.

Keeps an in-memory store keyed by namespace/name that follows the API
server, and fans every change out to registered handlers. Reconciles read
workflow state from here instead of polling the API server.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp
from kubernetes_asyncio.client import ApiException

from kube import KubeClient

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, Dict[str, Any]], None]


def object_key(obj: Dict[str, Any]) -> Tuple[str, str]:
    metadata = obj.get("metadata") or {}
    return metadata.get("namespace", ""), metadata.get("name", "")


class Informer:
    """
    List+watch cache for one resource kind in one namespace.

    Args:
        kube: Connected cluster client
        kind: Kind name, used for logging and handler dispatch
        api: API attribute on the client ('custom', 'core', 'apps', 'batch')
        method: Namespaced list method name on that API
        args: Positional arguments for the list method
        timeout_seconds: Server-side watch timeout
        retry_delay: Pause before re-establishing a failed watch
    """

    def __init__(
        self,
        kube: KubeClient,
        kind: str,
        api: str,
        method: str,
        args: Tuple[Any, ...],
        timeout_seconds: int = 300,
        retry_delay: float = 5.0,
    ):
        self.kube = kube
        self.kind = kind
        self.api = api
        self.method = method
        self.args = args
        self.timeout_seconds = timeout_seconds
        self.retry_delay = retry_delay
        self.resource_version: Optional[str] = None
        self._store: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._handlers: List[EventHandler] = []
        self._synced = asyncio.Event()

    def add_handler(self, handler: EventHandler) -> None:
        """Register a callback invoked as ``handler(event_type, obj)``."""
        self._handlers.append(handler)

    def get(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self._store.get((namespace, name))

    def has_synced(self) -> bool:
        return self._synced.is_set()

    async def wait_for_sync(self, timeout: Optional[float] = None) -> bool:
        """Wait for the initial list to complete. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._synced.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _list_fn(self) -> Callable[..., Any]:
        return getattr(getattr(self.kube, self.api), self.method)

    def apply(self, event_type: str, obj: Dict[str, Any]) -> None:
        """Apply one watch event to the store and notify handlers."""
        key = object_key(obj)
        if event_type == "DELETED":
            self._store.pop(key, None)
        else:
            self._store[key] = obj

        for handler in self._handlers:
            try:
                handler(event_type, obj)
            except Exception as e:
                logger.error(f"{self.kind} event handler failed: {e}", exc_info=True)

    async def relist(self) -> None:
        """Replace the store with a fresh list and record its resourceVersion."""
        result = await self._list_fn()(*self.args)
        if isinstance(result, dict):
            items = result.get("items", [])
            self.resource_version = (result.get("metadata") or {}).get(
                "resourceVersion"
            )
        else:
            items = [self.kube.to_dict(item) for item in result.items]
            self.resource_version = result.metadata.resource_version

        current = {object_key(item): item for item in items}
        for key in set(self._store) - set(current):
            self.apply("DELETED", self._store[key])
        for item in items:
            self.apply("ADDED", item)

        self._synced.set()
        logger.info(f"Listed {len(items)} {self.kind} objects")

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """List, then watch until shutdown, relisting when the watch expires."""
        while not shutdown_event.is_set():
            try:
                if self.resource_version is None:
                    await self.relist()

                async for event in self.kube.watch(
                    self._list_fn(),
                    *self.args,
                    resource_version=self.resource_version,
                    timeout_seconds=self.timeout_seconds,
                ):
                    if shutdown_event.is_set():
                        break
                    self._handle_watch_event(event)
                    if self.resource_version is None:
                        break

            except ApiException as e:
                if e.status == 410:
                    logger.info(f"{self.kind} watch expired, relisting")
                    self.resource_version = None
                    continue
                logger.warning(f"{self.kind} watch failed: {e.status} {e.reason}")
                await asyncio.sleep(self.retry_delay)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"{self.kind} watch connection error: {e}")
                await asyncio.sleep(self.retry_delay)

    def _handle_watch_event(self, event: Dict[str, Any]) -> None:
        event_type = event["type"]
        obj = event["object"]

        if event_type == "ERROR":
            if obj.get("code") == 410:
                logger.info(f"{self.kind} watch expired, relisting")
            else:
                logger.warning(f"{self.kind} watch error: {obj.get('message')}")
            self.resource_version = None
            return

        version = (obj.get("metadata") or {}).get("resourceVersion")
        if version:
            self.resource_version = version
        if event_type == "BOOKMARK":
            return
        self.apply(event_type, obj)
