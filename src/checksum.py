"""
Checksum Gate - resets an addon's lifecycle when its spec changes.
"""

import logging

from models import Addon, Phase, now_millis
from workflows import WorkflowLifecycle

logger = logging.getLogger(__name__)


class ChecksumGate:
    """
    Compares the spec checksum against the one stored in status.

    A changed spec invalidates everything recorded for the previous one:
    its workflows are deleted and the status is cleared before any step
    runs for the new spec.
    """

    async def evaluate(self, addon: Addon, workflows: WorkflowLifecycle) -> bool:
        """
        Reset the addon if its spec changed.

        Returns:
            True if the addon was reset and should be requeued without
            further work this pass, False to continue processing.
        """
        checksum = addon.calculate_checksum()
        if addon.status.checksum == checksum:
            return False

        # Old workflows first, so a failure leaves the stored status untouched
        await workflows.delete_owned_workflows()

        addon.clear_status()
        addon.status.checksum = checksum
        addon.status.start_time = now_millis()
        addon.set_prereq_and_install_statuses(Phase.PENDING)

        logger.info(
            f"Checksum changed for addon {addon.namespace}/{addon.name}, "
            f"addon will be installed"
        )
        return True
