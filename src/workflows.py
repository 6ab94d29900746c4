"""
Workflow Lifecycle - submits and tracks lifecycle-step workflows.

Each addon lifecycle step (prereqs, install, delete) is executed as an Argo
Workflow built from the template in the addon spec. Workflow names are
derived from the addon name, the step and the spec checksum, so a step is
submitted at most once per checksum and a restarted controller reattaches
to executions it already created.
"""

import logging
from typing import Any, Dict, Optional

from kubernetes_asyncio.client import ApiException

from errors import AddonValidationError, WorkflowError
from events import EventRecorder
from informer import Informer
from kube import (
    WORKFLOW_GROUP,
    WORKFLOW_PLURAL,
    WORKFLOW_VERSION,
    KubeClient,
    is_conflict,
    is_not_found,
)
from models import (
    ADDON_GROUP,
    CHECKSUM_LABEL,
    LIFECYCLE_STEP_LABEL,
    MANAGED_BY_LABEL,
    OWN_LABEL,
    Addon,
    LifecycleStep,
    Phase,
    WorkflowType,
)
from validation import parse_workflow_template

logger = logging.getLogger(__name__)

# Argo workflow phases
WF_PENDING = "Pending"
WF_RUNNING = "Running"
WF_SUCCEEDED = "Succeeded"
WF_FAILED = "Failed"
WF_ERROR = "Error"


def new_workflow_informer(
    kube: KubeClient, namespace: str, timeout_seconds: int = 300
) -> Informer:
    """Create the informer holding the workflow objects of a namespace."""
    return Informer(
        kube,
        kind="Workflow",
        api="custom",
        method="list_namespaced_custom_object",
        args=(WORKFLOW_GROUP, WORKFLOW_VERSION, namespace, WORKFLOW_PLURAL),
        timeout_seconds=timeout_seconds,
    )


def succeeded_phase(step: LifecycleStep) -> Phase:
    return Phase.DELETE_SUCCEEDED if step is LifecycleStep.DELETE else Phase.SUCCEEDED


def failed_phase(step: LifecycleStep) -> Phase:
    return Phase.DELETE_FAILED if step is LifecycleStep.DELETE else Phase.FAILED


def running_phase(step: LifecycleStep) -> Phase:
    return Phase.DELETING if step is LifecycleStep.DELETE else Phase.RUNNING


def submitted_reason(name: str) -> str:
    return f"Workflow {name} submitted"


def is_step_terminal(step: LifecycleStep, phase: Optional[Phase]) -> bool:
    """Whether a step has reached the terminal state it cannot leave."""
    return phase in (succeeded_phase(step), failed_phase(step))


def workflow_phase_to_step_phase(step: LifecycleStep, wf_phase: Optional[str]) -> Phase:
    """Translate an Argo workflow phase into the addon step phase."""
    if wf_phase == WF_SUCCEEDED:
        return succeeded_phase(step)
    if wf_phase in (WF_FAILED, WF_ERROR):
        return failed_phase(step)
    return running_phase(step)


def workflow_parameters(addon: Addon) -> Dict[str, str]:
    """Global workflow arguments derived from the addon params."""
    params = addon.spec.params
    parameters = {
        "namespace": addon.target_namespace,
        "clusterName": params.context.cluster_name,
        "clusterRegion": params.context.cluster_region,
    }
    parameters.update(params.context.additional_configs)
    parameters.update(params.data)
    return parameters


def build_workflow(
    addon: Addon, step: LifecycleStep, name: str, wt: WorkflowType
) -> Dict[str, Any]:
    """
    Build the Workflow manifest for a lifecycle step.

    Args:
        addon: Owning addon
        step: Lifecycle step the workflow executes
        name: Deterministic workflow name
        wt: Workflow definition from the addon spec

    Returns:
        Workflow manifest ready for submission

    Raises:
        AddonValidationError: If the template is not a Workflow manifest
    """
    manifest = parse_workflow_template(wt.template)
    checksum = addon.status.checksum or addon.calculate_checksum()

    metadata = manifest.get("metadata") or {}
    metadata.pop("generateName", None)
    metadata["name"] = name
    metadata["namespace"] = addon.namespace

    labels = metadata.get("labels") or {}
    labels.update(
        {
            OWN_LABEL: addon.name,
            MANAGED_BY_LABEL: ADDON_GROUP,
            LIFECYCLE_STEP_LABEL: step.value,
            CHECKSUM_LABEL: checksum[:10],
        }
    )
    metadata["labels"] = labels

    if addon.metadata.uid:
        metadata["ownerReferences"] = [
            {
                "apiVersion": addon.api_version,
                "kind": addon.kind,
                "name": addon.name,
                "uid": addon.metadata.uid,
            }
        ]
    manifest["metadata"] = metadata

    spec = manifest.get("spec") or {}
    arguments = spec.get("arguments") or {}
    parameters = arguments.get("parameters") or []
    declared = {p.get("name") for p in parameters}
    for key, value in workflow_parameters(addon).items():
        if key not in declared:
            parameters.append({"name": key, "value": value})
    arguments["parameters"] = parameters
    spec["arguments"] = arguments
    manifest["spec"] = spec

    return manifest


class WorkflowLifecycle:
    """
    Runs lifecycle-step workflows for one addon.

    Step status is read from the workflow informer, which follows the
    engine's objects continuously; nothing here polls.
    """

    def __init__(
        self,
        kube: KubeClient,
        informer: Informer,
        addon: Addon,
        recorder: EventRecorder,
    ):
        self.kube = kube
        self.informer = informer
        self.addon = addon
        self.recorder = recorder

    async def run_step(self, step: LifecycleStep) -> None:
        """
        Submit or track the workflow for a lifecycle step.

        Sets the step status on the addon. Does nothing when the step is
        already terminal.

        Raises:
            WorkflowError: If the step is undefined or submission failed
        """
        addon = self.addon
        current = addon.get_status_by_lifecycle_step(step)

        if is_step_terminal(step, current):
            logger.info(
                f"Lifecycle step {step.value} completed for {addon.namespace}/{addon.name}, "
                f"skipping workflow execution"
            )
            return

        wt = addon.get_workflow_type(step)
        if wt is None:
            addon.set_status_by_lifecycle_step(step, failed_phase(step))
            raise WorkflowError(
                f"lifecycle step {step.value} is not defined for addon "
                f"{addon.namespace}/{addon.name}"
            )

        if not wt.template:
            logger.info(
                f"Workflow template for {step.value} is empty, skipping workflow execution"
            )
            addon.set_status_by_lifecycle_step(step, succeeded_phase(step))
            return

        name = addon.get_formatted_workflow_name(step)
        if not name:
            addon.set_status_by_lifecycle_step(step, failed_phase(step))
            raise WorkflowError("could not generate workflow name")

        existing = self.informer.get(addon.namespace, name)
        if existing is not None:
            wf_phase = (existing.get("status") or {}).get("phase")
            phase = workflow_phase_to_step_phase(step, wf_phase)
            addon.set_status_by_lifecycle_step(step, phase)
            logger.debug(f"Workflow {name} is {wf_phase or 'new'}, step {step.value} -> {phase.value}")
            return

        submitted = addon.status.reason.get(step.value) == submitted_reason(name)
        if current is running_phase(step) and (step is not LifecycleStep.DELETE or submitted):
            # Submitted already; wait for the informer to observe it
            logger.info(f"Workflow {name} submitted, waiting for status")
            return

        await self._submit(step, name, wt)

    async def _submit(self, step: LifecycleStep, name: str, wt: WorkflowType) -> None:
        addon = self.addon
        try:
            manifest = build_workflow(addon, step, name, wt)
        except AddonValidationError as e:
            addon.set_status_by_lifecycle_step(step, failed_phase(step), e.message)
            raise WorkflowError(f"invalid {step.value} workflow template: {e.message}")

        try:
            await self.kube.create_workflow(addon.namespace, manifest)
        except ApiException as e:
            if is_conflict(e):
                logger.info(f"Workflow {addon.namespace}/{name} already exists, reattaching")
                addon.set_status_by_lifecycle_step(
                    step, running_phase(step), submitted_reason(name)
                )
                return
            reason = f"failed to submit {step.value} workflow {name}: {e.status} {e.reason}"
            addon.set_status_by_lifecycle_step(step, failed_phase(step), reason)
            raise WorkflowError(reason)

        addon.set_status_by_lifecycle_step(step, running_phase(step), submitted_reason(name))
        logger.info(f"Submitted {step.value} workflow {addon.namespace}/{name}")
        await self.recorder.normal(
            addon,
            "Submitted",
            f"Submitted {step.value.title()} workflow {addon.namespace}/{name}.",
        )

    async def delete_owned_workflows(self) -> int:
        """
        Delete every workflow labeled as owned by the addon.

        Individual delete failures are logged and skipped.

        Returns:
            Number of workflows deleted
        """
        addon = self.addon
        selector = f"{OWN_LABEL}={addon.name}"
        logger.info(f"Deleting old workflows with selector {selector}")

        result = await self.kube.list_workflows(addon.namespace, selector)
        workflows = result.get("items", [])
        logger.info(f"{len(workflows)} workflows found")

        deleted = 0
        for wf in workflows:
            name = wf["metadata"]["name"]
            try:
                await self.kube.delete_workflow(addon.namespace, name)
                deleted += 1
                logger.info(f"Deleted old workflow: {name}")
            except ApiException as e:
                if not is_not_found(e):
                    logger.warning(f"Unable to delete old workflow {name}: {e.reason}")
        return deleted
