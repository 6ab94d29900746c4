"""
Resource Observer - rolls up the status of an addon's child workloads.

Lists every workload kind in the addon namespace that matches the addon's
selector and produces one ObjectStatus record per object.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from errors import AddonError, AddonValidationError, ObservationError
from kube import API_ERRORS, KubeClient
from models import ADDON_GROUP, MANAGED_BY_LABEL, NAME_LABEL, Addon, ObjectStatus

logger = logging.getLogger(__name__)


def _conditions(obj: Dict[str, Any]) -> Dict[str, str]:
    status = obj.get("status") or {}
    return {c.get("type"): c.get("status") for c in status.get("conditions") or []}


def replicas_status(obj: Dict[str, Any]) -> str:
    desired = (obj.get("spec") or {}).get("replicas", 1)
    ready = (obj.get("status") or {}).get("readyReplicas") or 0
    return "Ready" if ready >= desired else "Progressing"


def daemonset_status(obj: Dict[str, Any]) -> str:
    status = obj.get("status") or {}
    desired = status.get("desiredNumberScheduled") or 0
    ready = status.get("numberReady") or 0
    return "Ready" if ready >= desired else "Progressing"


def job_status(obj: Dict[str, Any]) -> str:
    conditions = _conditions(obj)
    if conditions.get("Complete") == "True":
        return "Succeeded"
    if conditions.get("Failed") == "True":
        return "Failed"
    if (obj.get("status") or {}).get("active"):
        return "Running"
    return "Pending"


def cronjob_status(obj: Dict[str, Any]) -> str:
    if (obj.get("spec") or {}).get("suspend"):
        return "Suspended"
    if (obj.get("status") or {}).get("active"):
        return "Active"
    return "Scheduled"


def service_status(obj: Dict[str, Any]) -> str:
    if (obj.get("spec") or {}).get("type") == "LoadBalancer":
        ingress = ((obj.get("status") or {}).get("loadBalancer") or {}).get("ingress")
        return "Ready" if ingress else "Pending"
    return "Ready"


@dataclass(frozen=True)
class ResourceKind:
    """How to list and summarize one workload kind."""

    kind: str
    group: str
    api: str
    method: str
    summarize: Callable[[Dict[str, Any]], str]


RESOURCE_KINDS: Tuple[ResourceKind, ...] = (
    ResourceKind("Service", "v1", "core", "list_namespaced_service", service_status),
    ResourceKind("Job", "batch/v1", "batch", "list_namespaced_job", job_status),
    ResourceKind(
        "CronJob", "batch/v1", "batch", "list_namespaced_cron_job", cronjob_status
    ),
    ResourceKind(
        "StatefulSet", "apps/v1", "apps", "list_namespaced_stateful_set", replicas_status
    ),
    ResourceKind(
        "Deployment", "apps/v1", "apps", "list_namespaced_deployment", replicas_status
    ),
    ResourceKind(
        "DaemonSet", "apps/v1", "apps", "list_namespaced_daemon_set", daemonset_status
    ),
    ResourceKind(
        "ReplicaSet", "apps/v1", "apps", "list_namespaced_replica_set", replicas_status
    ),
)


def addon_selector(addon: Addon) -> str:
    """
    Selector for the addon's workloads.

    Always narrowed by the managed-by and name labels.

    Raises:
        AddonValidationError: If the addon selector is malformed
    """
    try:
        return addon.spec.selector.to_selector_string(
            {MANAGED_BY_LABEL: ADDON_GROUP, NAME_LABEL: addon.name}
        )
    except ValueError as e:
        raise AddonValidationError(f"label selector is invalid. {e}")


class ResourceObserver:
    """Observes the workloads belonging to an addon."""

    def __init__(self, kube: KubeClient, kinds: Tuple[ResourceKind, ...] = RESOURCE_KINDS):
        self.kube = kube
        self.kinds = kinds

    async def observe(
        self, addon: Addon
    ) -> Tuple[List[ObjectStatus], Optional[ObservationError]]:
        """
        Observe all workload kinds for an addon.

        A failing kind does not stop the others; its error is folded into a
        single ObservationError returned alongside whatever was observed.

        Returns:
            Tuple of (observed records, aggregate error or None)
        """
        selector = addon_selector(addon)
        observed: List[ObjectStatus] = []
        errors: List[Exception] = []

        for kind in self.kinds:
            try:
                items = await self.kube.list_workloads(
                    kind.api, kind.method, addon.namespace, selector
                )
            except API_ERRORS as e:
                errors.append(
                    AddonError(
                        f"failed to observe resource {kind.kind} for addon "
                        f"{addon.namespace}/{addon.name}: {e}"
                    )
                )
                continue

            for item in items:
                observed.append(
                    ObjectStatus(
                        kind=kind.kind,
                        group=kind.group,
                        name=item["metadata"]["name"],
                        status=kind.summarize(item),
                    )
                )

        if errors:
            logger.warning(
                f"Observed {len(observed)} resources for {addon.namespace}/{addon.name} "
                f"with {len(errors)} failed kinds"
            )
            return observed, ObservationError(errors)
        return observed, None
