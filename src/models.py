"""
Addon resource models.

Pydantic models mirroring the Addon custom resource, plus the helpers the
controller uses to read and mutate lifecycle state.
"""

import hashlib
import json
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

ADDON_GROUP = "addonmgr.no8s.io"
ADDON_VERSION = "v1alpha1"
ADDON_PLURAL = "addons"
ADDON_KIND = "Addon"

FINALIZER_NAME = f"delete.{ADDON_GROUP}"

# Label carried by every object an addon owns, valued with the addon name
OWN_LABEL = "app.kubernetes.io/part-of"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
NAME_LABEL = "app.kubernetes.io/name"
LIFECYCLE_STEP_LABEL = f"{ADDON_GROUP}/lifecycle-step"
CHECKSUM_LABEL = f"{ADDON_GROUP}/checksum"

LABEL_VALUE_PATTERN = re.compile(r"^(([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9])?$")
LABEL_NAME_PATTERN = re.compile(r"^([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]$")
MAX_LABEL_LENGTH = 63


def now_millis() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class Phase(str, Enum):
    """Phase of a lifecycle step."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    VALIDATION_FAILED = "Validation Failed"
    DELETING = "Deleting"
    DELETE_FAILED = "Delete Failed"
    DELETE_SUCCEEDED = "Delete Succeeded"

    def completed(self) -> bool:
        return self is Phase.SUCCEEDED

    def deleting(self) -> bool:
        return self in (Phase.DELETING, Phase.DELETE_FAILED, Phase.DELETE_SUCCEEDED)


class LifecycleStep(str, Enum):
    """Lifecycle steps, each backed by its own workflow template."""

    PREREQS = "prereqs"
    INSTALL = "install"
    DELETE = "delete"


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LabelSelectorRequirement(_Model):
    key: str
    operator: str
    values: List[str] = Field(default_factory=list)


class LabelSelector(_Model):
    """Kubernetes-style label selector."""

    match_labels: Dict[str, str] = Field(default_factory=dict, alias="matchLabels")
    match_expressions: List[LabelSelectorRequirement] = Field(
        default_factory=list, alias="matchExpressions"
    )

    def to_selector_string(self, extra_labels: Optional[Dict[str, str]] = None) -> str:
        """
        Render the selector in label-selector query syntax.

        Args:
            extra_labels: Labels merged over matchLabels before rendering

        Returns:
            Selector string, e.g. ``app=web,tier in (a,b),!legacy``

        Raises:
            ValueError: If a key, value or operator is malformed
        """
        labels = dict(self.match_labels)
        labels.update(extra_labels or {})

        parts = []
        for key, value in sorted(labels.items()):
            _check_label_key(key)
            _check_label_value(value)
            parts.append(f"{key}={value}")

        for req in self.match_expressions:
            _check_label_key(req.key)
            if req.operator in ("In", "NotIn"):
                if not req.values:
                    raise ValueError(
                        f"values must be non-empty for operator {req.operator} "
                        f"on key {req.key}"
                    )
                for value in req.values:
                    _check_label_value(value)
                parts.append(
                    f"{req.key} {req.operator.lower()} ({','.join(req.values)})"
                )
            elif req.operator in ("Exists", "DoesNotExist"):
                if req.values:
                    raise ValueError(
                        f"values must be empty for operator {req.operator} "
                        f"on key {req.key}"
                    )
                prefix = "" if req.operator == "Exists" else "!"
                parts.append(f"{prefix}{req.key}")
            else:
                raise ValueError(f"{req.operator!r} is not a valid selector operator")

        return ",".join(parts)


def _check_label_key(key: str) -> None:
    prefix, _, name = key.rpartition("/")
    if prefix and len(prefix) > 253:
        raise ValueError(f"label key prefix too long: {key!r}")
    if len(name) > MAX_LABEL_LENGTH or not LABEL_NAME_PATTERN.match(name):
        raise ValueError(f"invalid label key: {key!r}")


def _check_label_value(value: str) -> None:
    if len(value) > MAX_LABEL_LENGTH or not LABEL_VALUE_PATTERN.match(value):
        raise ValueError(f"invalid label value: {value!r}")


class ClusterContext(_Model):
    cluster_name: str = Field("", alias="clusterName")
    cluster_region: str = Field("", alias="clusterRegion")
    additional_configs: Dict[str, str] = Field(
        default_factory=dict, alias="additionalConfigs"
    )


class AddonParams(_Model):
    namespace: str = ""
    context: ClusterContext = Field(default_factory=ClusterContext)
    data: Dict[str, str] = Field(default_factory=dict)


class SecretRef(_Model):
    name: str


class WorkflowType(_Model):
    """Workflow definition for one lifecycle step."""

    name_prefix: str = Field("", alias="namePrefix")
    template: str = ""


class LifecycleWorkflowSpec(_Model):
    prereqs: Optional[WorkflowType] = None
    install: Optional[WorkflowType] = None
    delete: Optional[WorkflowType] = None


class AddonSpec(_Model):
    pkg_name: str = Field("", alias="pkgName")
    pkg_version: str = Field("", alias="pkgVersion")
    pkg_type: str = Field("", alias="pkgType")
    pkg_description: str = Field("", alias="pkgDescription")
    pkg_deps: Dict[str, str] = Field(default_factory=dict, alias="pkgDeps")
    selector: LabelSelector = Field(default_factory=LabelSelector)
    params: AddonParams = Field(default_factory=AddonParams)
    secrets: List[SecretRef] = Field(default_factory=list)
    lifecycle: LifecycleWorkflowSpec = Field(default_factory=LifecycleWorkflowSpec)


class ObjectStatus(_Model):
    """Observed status of one child workload."""

    kind: str
    group: str = ""
    name: str
    status: str = ""


class AddonStatusLifecycle(_Model):
    prereqs: Optional[Phase] = None
    installed: Optional[Phase] = None


class AddonStatus(_Model):
    checksum: str = ""
    lifecycle: AddonStatusLifecycle = Field(default_factory=AddonStatusLifecycle)
    resources: List[ObjectStatus] = Field(default_factory=list)
    reason: Dict[str, str] = Field(default_factory=dict)
    start_time: int = Field(0, alias="starttime")


class ObjectMeta(_Model):
    name: str
    namespace: str = "default"
    uid: str = ""
    resource_version: str = Field("", alias="resourceVersion")
    generation: int = 0
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    deletion_timestamp: Optional[str] = Field(None, alias="deletionTimestamp")


class Addon(_Model):
    """An Addon custom resource."""

    api_version: str = Field(f"{ADDON_GROUP}/{ADDON_VERSION}", alias="apiVersion")
    kind: str = ADDON_KIND
    metadata: ObjectMeta
    spec: AddonSpec = Field(default_factory=AddonSpec)
    status: AddonStatus = Field(default_factory=AddonStatus)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "Addon":
        return cls.model_validate(obj)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def status_dict(self) -> Dict[str, Any]:
        return self.status.model_dump(mode="json", by_alias=True, exclude_none=True)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def target_namespace(self) -> str:
        """Namespace the addon installs into."""
        return self.spec.params.namespace or self.metadata.namespace

    def being_deleted(self) -> bool:
        return bool(self.metadata.deletion_timestamp)

    def calculate_checksum(self) -> str:
        """Calculate a stable hash of the spec for change detection."""
        spec = self.spec.model_dump(mode="json", by_alias=True, exclude_none=True)
        spec_string = json.dumps(spec, sort_keys=True)
        return hashlib.sha256(spec_string.encode()).hexdigest()

    # ==================== Lifecycle status ====================

    def get_install_status(self) -> Optional[Phase]:
        return self.status.lifecycle.installed

    def get_prereq_status(self) -> Optional[Phase]:
        return self.status.lifecycle.prereqs

    def set_install_status(self, phase: Phase, reason: str = "") -> None:
        self.status.lifecycle.installed = phase
        if reason:
            self.status.reason[LifecycleStep.INSTALL.value] = reason

    def set_prereq_status(self, phase: Phase, reason: str = "") -> None:
        self.status.lifecycle.prereqs = phase
        if reason:
            self.status.reason[LifecycleStep.PREREQS.value] = reason

    def set_prereq_and_install_statuses(self, phase: Phase, reason: str = "") -> None:
        self.set_prereq_status(phase, reason)
        self.set_install_status(phase, reason)

    def get_status_by_lifecycle_step(self, step: LifecycleStep) -> Optional[Phase]:
        if step is LifecycleStep.PREREQS:
            return self.status.lifecycle.prereqs
        # Install and delete both report through the installed phase
        return self.status.lifecycle.installed

    def set_status_by_lifecycle_step(
        self, step: LifecycleStep, phase: Phase, reason: str = ""
    ) -> None:
        if step is LifecycleStep.PREREQS:
            self.set_prereq_status(phase, reason)
        else:
            self.status.lifecycle.installed = phase
            if reason:
                self.status.reason[step.value] = reason

    def clear_status(self) -> None:
        """Drop every status field; identity lives in metadata and is kept."""
        self.status = AddonStatus()

    # ==================== Workflows ====================

    def get_workflow_type(self, step: LifecycleStep) -> Optional[WorkflowType]:
        """Return the workflow definition for a step, or None if undefined."""
        return getattr(self.spec.lifecycle, LifecycleStep(step).value)

    def get_formatted_workflow_name(self, step: LifecycleStep) -> str:
        """
        Deterministic workflow name for a lifecycle step.

        Stable for a given checksum so a restarted controller finds the
        execution it already submitted. Empty if no valid name can be built.
        """
        wt = self.get_workflow_type(step)
        checksum = self.status.checksum or self.calculate_checksum()
        parts = [self.name]
        if wt is not None and wt.name_prefix:
            parts.append(wt.name_prefix)
        parts.extend([step.value, checksum[:10], "wf"])
        name = "-".join(parts)
        if len(name) > 253:
            return ""
        return name

    # ==================== Finalizers ====================

    def has_finalizer(self, finalizer: str = FINALIZER_NAME) -> bool:
        return finalizer in self.metadata.finalizers

    def add_finalizer(self, finalizer: str = FINALIZER_NAME) -> None:
        if finalizer not in self.metadata.finalizers:
            self.metadata.finalizers.append(finalizer)

    def remove_finalizer(self, finalizer: str = FINALIZER_NAME) -> None:
        self.metadata.finalizers = [
            f for f in self.metadata.finalizers if f != finalizer
        ]


@dataclass(frozen=True)
class Request:
    """Identity of an addon to reconcile."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class ReconcileResult:
    """
    Outcome of one reconcile invocation.

    ``error`` set means the dispatch layer retries with backoff, unless
    ``fatal`` is also set, in which case the key is dropped until the next
    watch event.
    """

    requeue: bool = False
    requeue_after: Optional[float] = None
    error: Optional[BaseException] = None
    fatal: bool = False

    @property
    def success(self) -> bool:
        return self.error is None
