"""
Event Recording - Kubernetes Events attached to addons.

Events give operators an audit trail of every lifecycle transition directly
on the Addon object (``kubectl describe addon``). Recording is best-effort:
a failed write is logged and dropped, never surfaced to the reconcile.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from kube import API_ERRORS, KubeClient
from models import Addon

logger = logging.getLogger(__name__)

COMPONENT_NAME = "addon-manager-controller"


class EventType(Enum):
    """Kubernetes event types."""

    NORMAL = "Normal"
    WARNING = "Warning"


def build_event(
    addon: Addon,
    event_type: EventType,
    reason: str,
    message: str,
    component: str = COMPONENT_NAME,
) -> Dict[str, Any]:
    """
    Build a core/v1 Event body for an addon.

    Args:
        addon: The object the event is about
        event_type: Normal or Warning
        reason: Short CamelCase reason, e.g. 'Submitted'
        message: Human-readable message
        component: Reporting component name

    Returns:
        Event manifest as a dict
    """
    now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return {
        "apiVersion": "v1",
        "kind": "Event",
        "metadata": {
            "generateName": f"{addon.name}.",
            "namespace": addon.namespace,
        },
        "involvedObject": {
            "apiVersion": addon.api_version,
            "kind": addon.kind,
            "name": addon.name,
            "namespace": addon.namespace,
            "uid": addon.metadata.uid,
            "resourceVersion": addon.metadata.resource_version,
        },
        "type": event_type.value,
        "reason": reason,
        "message": message,
        "source": {"component": component},
        "firstTimestamp": now,
        "lastTimestamp": now,
        "count": 1,
    }


class EventRecorder:
    """Records events for addons through the cluster API."""

    def __init__(self, kube: KubeClient, component: str = COMPONENT_NAME):
        self.kube = kube
        self.component = component

    async def event(
        self, addon: Addon, event_type: EventType, reason: str, message: str
    ) -> None:
        """
        Record an event (non-fatal).

        Failures are logged and dropped.
        """
        body = build_event(addon, event_type, reason, message, self.component)
        try:
            await self.kube.create_event(addon.namespace, body)
        except API_ERRORS as e:
            logger.warning(
                f"Dropped event {reason} for addon {addon.namespace}/{addon.name}: {e}"
            )

    async def normal(self, addon: Addon, reason: str, message: str) -> None:
        await self.event(addon, EventType.NORMAL, reason, message)

    async def warning(self, addon: Addon, reason: str, message: str) -> None:
        await self.event(addon, EventType.WARNING, reason, message)
