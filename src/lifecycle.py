"""
Addon Lifecycle - the per-addon state machine.

Drives an addon through validation, prereqs, install and observation, and
through its delete workflow when the addon is removed. Every transition is
recorded on the addon status and as an event; the caller persists status.
"""

import logging

from errors import (
    AddonValidationError,
    DependencyError,
    ObservationError,
    SecretValidationError,
    TTLExpiredError,
    WorkflowError,
)
from events import EventRecorder
from kube import KubeClient
from models import Addon, LifecycleStep, Phase, ReconcileResult, now_millis
from observer import ResourceObserver
from updater import AddonUpdater
from validation import AddonValidator
from version_cache import DependencyState, VersionCache
from workflows import WorkflowLifecycle

logger = logging.getLogger(__name__)

DEPENDENCY_PENDING_REQUEUE = 10.0
DEPENDENCY_MISSING_REQUEUE = 30.0
RUNNING_REQUEUE = 30.0


class AddonLifecycle:
    """Runs the lifecycle of one addon per reconcile pass."""

    def __init__(
        self,
        kube: KubeClient,
        cache: VersionCache,
        recorder: EventRecorder,
        updater: AddonUpdater,
        observer: ResourceObserver,
        ttl_seconds: int = 3600,
    ):
        self.kube = kube
        self.cache = cache
        self.recorder = recorder
        self.updater = updater
        self.observer = observer
        self.ttl_seconds = ttl_seconds

    async def process(self, addon: Addon, workflows: WorkflowLifecycle) -> ReconcileResult:
        """
        Advance a live addon by one pass.

        Returns:
            Requeue instructions for waiting states

        Raises:
            AddonError: A failure the dispatch layer should retry
        """
        ident = f"{addon.namespace}/{addon.name}"

        installed = addon.get_install_status()
        if installed is not None and installed.completed():
            logger.debug(f"Addon {ident} is installed, nothing to do")
            return ReconcileResult()

        try:
            AddonValidator(addon, self.cache).validate()
        except DependencyError as e:
            if e.state is DependencyState.PENDING:
                reason = f"Addon {ident} is waiting on dependencies to be out of Pending state. {e.message}"
                logger.info(reason)
                addon.set_install_status(Phase.PENDING, reason)
                await self.recorder.normal(addon, "Pending", reason)
                return ReconcileResult(requeue_after=DEPENDENCY_PENDING_REQUEUE)

            reason = f"Addon {ident} is waiting on dependencies to be installed. {e.message}"
            logger.warning(reason)
            addon.set_install_status(Phase.VALIDATION_FAILED, reason)
            await self.recorder.warning(addon, "Failed", reason)
            return ReconcileResult(requeue_after=DEPENDENCY_MISSING_REQUEUE)
        except AddonValidationError as e:
            reason = f"Addon {ident} is not valid. {e.message}"
            logger.error(reason)
            addon.set_install_status(Phase.VALIDATION_FAILED, reason)
            await self.recorder.warning(addon, "Failed", reason)
            raise

        # No await between validation and the claim
        self.updater.add_to_cache(addon)

        await self.recorder.normal(addon, "Completed", f"Addon {ident} is valid.")
        await self.updater.ensure_finalizer(addon)

        if self.ttl_expired(addon):
            reason = f"Addon {ident} ttl expired, starttime exceeded {self.ttl_seconds}s"
            logger.error(reason)
            addon.set_install_status(Phase.FAILED, reason)
            await self.recorder.warning(addon, "Failed", reason)
            raise TTLExpiredError(reason)

        await self.execute_prereq_and_install(addon, workflows)

        observed, error = await self.observer.observe(addon)
        if error is None or observed:
            addon.status.resources = observed
        if error is not None:
            await self._observation_failed(addon, error)

        running = (addon.get_prereq_status(), addon.get_install_status())
        if Phase.RUNNING in running:
            return ReconcileResult(requeue_after=RUNNING_REQUEUE)
        return ReconcileResult()

    async def _observation_failed(self, addon: Addon, error: ObservationError) -> None:
        reason = f"Addon {addon.namespace}/{addon.name} failed to find deployed resources. {error.message}"
        logger.error(reason)
        await self.recorder.warning(addon, "Failed", reason)
        raise error

    def ttl_expired(self, addon: Addon) -> bool:
        """Whether the addon has been non-terminal for longer than its TTL."""
        start = addon.status.start_time
        if not start:
            return False
        elapsed_ms = now_millis() - start
        return elapsed_ms > self.ttl_seconds * 1000

    async def execute_prereq_and_install(
        self, addon: Addon, workflows: WorkflowLifecycle
    ) -> None:
        """
        Run prereqs, then install once prereqs succeeded.

        Raises:
            WorkflowError: A step could not be resolved or submitted
            SecretValidationError: A required secret is missing
        """
        ident = f"{addon.namespace}/{addon.name}"

        try:
            await workflows.run_step(LifecycleStep.PREREQS)
        except WorkflowError as e:
            reason = f"Addon {ident} prereqs failed. {e.message}"
            logger.error(reason)
            await self.recorder.warning(addon, "Failed", reason)
            raise

        prereqs = addon.get_prereq_status()
        if prereqs is Phase.FAILED:
            addon.set_install_status(Phase.FAILED, f"Addon {ident} prereqs failed.")
            return
        if prereqs is not Phase.SUCCEEDED:
            return

        if addon.get_install_status() in (None, Phase.PENDING, Phase.VALIDATION_FAILED):
            try:
                await self.validate_secrets(addon)
            except SecretValidationError as e:
                reason = f"Addon {ident} could not validate secrets. {e.message}"
                logger.error(reason)
                addon.set_install_status(Phase.FAILED, reason)
                await self.recorder.warning(addon, "Failed", reason)
                raise

        try:
            await workflows.run_step(LifecycleStep.INSTALL)
        except WorkflowError as e:
            reason = f"Addon {ident} install failed. {e.message}"
            logger.error(reason)
            await self.recorder.warning(addon, "Failed", reason)
            raise

    async def validate_secrets(self, addon: Addon) -> None:
        """
        Check that every secret the addon references exists.

        Raises:
            SecretValidationError: For the first missing secret
        """
        if not addon.spec.secrets:
            return
        namespace = addon.target_namespace
        names = set(await self.kube.list_secret_names(namespace))
        for secret in addon.spec.secrets:
            if secret.name not in names:
                raise SecretValidationError(
                    f'addon {addon.name} needs secret "{secret.name}" that was '
                    f"not found in namespace {namespace}"
                )

    async def finalize(self, addon: Addon, workflows: WorkflowLifecycle) -> ReconcileResult:
        """
        Tear down an addon being deleted.

        The addon leaves the version cache first. The finalizer is removed
        once the delete workflow succeeded, or straight away when the addon
        has no delete template.

        Raises:
            WorkflowError: The delete step could not be submitted
            ApiException: The finalizer could not be removed
        """
        ident = f"{addon.namespace}/{addon.name}"
        self.updater.remove_from_cache(addon)

        remove_finalizer = True
        wt = addon.get_workflow_type(LifecycleStep.DELETE)
        if wt is not None and wt.template:
            remove_finalizer = False
            await workflows.run_step(LifecycleStep.DELETE)
            if addon.get_install_status() is Phase.DELETE_SUCCEEDED:
                remove_finalizer = True

        if remove_finalizer:
            try:
                await self.updater.remove_finalizer(addon)
            except Exception as e:
                reason = f"Addon {ident} finalizer could not be removed. {e}"
                logger.error(reason)
                addon.set_install_status(Phase.DELETE_FAILED, reason)
                raise
            logger.info(f"Addon {ident} finalized")
            return ReconcileResult()

        if addon.get_install_status() is Phase.DELETE_FAILED:
            reason = f"Addon {ident} delete workflow failed, finalizer kept."
            logger.error(reason)
            await self.recorder.warning(addon, "Failed", reason)
            return ReconcileResult()

        return ReconcileResult(requeue_after=RUNNING_REQUEUE)
