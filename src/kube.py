"""
Kube Client - async access to the cluster API.

Wraps the kubernetes_asyncio API groups the controller needs: the Addon
custom resource and its status subresource, Argo workflows, secrets,
events, and the workload kinds observed for each addon.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp
from kubernetes_asyncio import client, watch
from kubernetes_asyncio import config as k8s_config
from kubernetes_asyncio.client import ApiException
from kubernetes_asyncio.config import ConfigException

from models import ADDON_GROUP, ADDON_PLURAL, ADDON_VERSION

logger = logging.getLogger(__name__)

WORKFLOW_GROUP = "argoproj.io"
WORKFLOW_VERSION = "v1alpha1"
WORKFLOW_PLURAL = "workflows"

# Errors a single cluster API call can raise
API_ERRORS = (ApiException, aiohttp.ClientError, asyncio.TimeoutError)


def is_not_found(error: BaseException) -> bool:
    return isinstance(error, ApiException) and error.status == 404


def is_conflict(error: BaseException) -> bool:
    return isinstance(error, ApiException) and error.status == 409


class KubeClient:
    """Manages cluster API access for the controller."""

    def __init__(self, kubeconfig: Optional[str] = None):
        self.kubeconfig = kubeconfig
        self.api_client: Optional[client.ApiClient] = None
        self.custom: Optional[client.CustomObjectsApi] = None
        self.core: Optional[client.CoreV1Api] = None
        self.apps: Optional[client.AppsV1Api] = None
        self.batch: Optional[client.BatchV1Api] = None

    async def connect(self):
        """Load cluster credentials and create API clients."""
        if self.kubeconfig:
            await k8s_config.load_kube_config(config_file=self.kubeconfig)
        else:
            try:
                k8s_config.load_incluster_config()
            except ConfigException:
                await k8s_config.load_kube_config()

        self.api_client = client.ApiClient()
        self.custom = client.CustomObjectsApi(self.api_client)
        self.core = client.CoreV1Api(self.api_client)
        self.apps = client.AppsV1Api(self.api_client)
        self.batch = client.BatchV1Api(self.api_client)
        logger.info("Connected to cluster API")

    async def close(self):
        """Close the underlying HTTP session."""
        if self.api_client:
            await self.api_client.close()
            logger.info("Closed cluster API client")

    def _ensure_connected(self) -> None:
        if self.api_client is None:
            raise RuntimeError(
                "Cluster client not connected. Call connect() before performing operations."
            )

    def to_dict(self, obj: Any) -> Dict[str, Any]:
        """Convert a typed API model to its wire (camelCase) dict form."""
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    # ==================== Addons ====================

    async def get_addon(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Fetch an addon, or None if it does not exist."""
        self._ensure_connected()
        try:
            return await self.custom.get_namespaced_custom_object(
                ADDON_GROUP, ADDON_VERSION, namespace, ADDON_PLURAL, name
            )
        except ApiException as e:
            if is_not_found(e):
                return None
            raise

    async def replace_addon_status(
        self, namespace: str, name: str, status: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Replace the whole status subresource of an addon."""
        self._ensure_connected()
        body = [{"op": "add", "path": "/status", "value": status}]
        return await self.custom.patch_namespaced_custom_object_status(
            ADDON_GROUP, ADDON_VERSION, namespace, ADDON_PLURAL, name, body
        )

    async def set_addon_finalizers(
        self, namespace: str, name: str, finalizers: List[str]
    ) -> Dict[str, Any]:
        """Replace the finalizer list of an addon."""
        self._ensure_connected()
        body = [{"op": "add", "path": "/metadata/finalizers", "value": finalizers}]
        return await self.custom.patch_namespaced_custom_object(
            ADDON_GROUP, ADDON_VERSION, namespace, ADDON_PLURAL, name, body
        )

    # ==================== Workflows ====================

    async def create_workflow(
        self, namespace: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        self._ensure_connected()
        return await self.custom.create_namespaced_custom_object(
            WORKFLOW_GROUP, WORKFLOW_VERSION, namespace, WORKFLOW_PLURAL, body
        )

    async def list_workflows(
        self, namespace: str, label_selector: str = ""
    ) -> Dict[str, Any]:
        self._ensure_connected()
        return await self.custom.list_namespaced_custom_object(
            WORKFLOW_GROUP,
            WORKFLOW_VERSION,
            namespace,
            WORKFLOW_PLURAL,
            label_selector=label_selector,
        )

    async def delete_workflow(self, namespace: str, name: str) -> None:
        self._ensure_connected()
        await self.custom.delete_namespaced_custom_object(
            WORKFLOW_GROUP, WORKFLOW_VERSION, namespace, WORKFLOW_PLURAL, name
        )

    # ==================== Core ====================

    async def list_secret_names(self, namespace: str) -> List[str]:
        self._ensure_connected()
        secrets = await self.core.list_namespaced_secret(namespace)
        return [s.metadata.name for s in secrets.items]

    async def create_event(self, namespace: str, body: Dict[str, Any]) -> None:
        self._ensure_connected()
        await self.core.create_namespaced_event(namespace, body)

    # ==================== Workloads ====================

    async def list_workloads(
        self, api: str, method: str, namespace: str, label_selector: str
    ) -> List[Dict[str, Any]]:
        """
        List workload objects through a typed API method.

        Args:
            api: API group attribute on this client ('core', 'apps', 'batch')
            method: List method name, e.g. 'list_namespaced_deployment'
            namespace: Namespace to list in
            label_selector: Label selector string

        Returns:
            Objects as wire-format dicts
        """
        self._ensure_connected()
        list_fn = getattr(getattr(self, api), method)
        result = await list_fn(namespace, label_selector=label_selector)
        return [self.to_dict(item) for item in result.items]

    # ==================== Watches ====================

    async def watch(
        self,
        list_fn: Any,
        *args: Any,
        resource_version: Optional[str] = None,
        timeout_seconds: int = 300,
        **kwargs: Any,
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Stream watch events for a list function.

        Yields dicts with ``type`` and ``object`` (wire-format dict) keys.
        The stream ends when the server closes the watch.
        """
        self._ensure_connected()
        if resource_version:
            kwargs["resource_version"] = resource_version
        w = watch.Watch()
        try:
            async for event in w.stream(
                list_fn, *args, timeout_seconds=timeout_seconds, **kwargs
            ):
                obj = event.get("raw_object") or self.to_dict(event["object"])
                yield {"type": event["type"], "object": obj}
        finally:
            w.stop()
