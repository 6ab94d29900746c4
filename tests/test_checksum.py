"""Unit tests for checksum.py - Spec change detection."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from checksum import ChecksumGate
from models import ObjectStatus, Phase


@pytest.fixture
def workflows():
    wfl = MagicMock()
    wfl.delete_owned_workflows = AsyncMock(return_value=2)
    return wfl


@pytest.mark.asyncio
class TestChecksumGate:
    """Tests for ChecksumGate.evaluate."""

    async def test_new_addon_is_reset(self, addon, workflows):
        changed = await ChecksumGate().evaluate(addon, workflows)

        assert changed is True
        assert addon.status.checksum == addon.calculate_checksum()
        assert addon.get_prereq_status() is Phase.PENDING
        assert addon.get_install_status() is Phase.PENDING
        assert addon.status.start_time > 0
        workflows.delete_owned_workflows.assert_awaited_once()

    async def test_unchanged_is_noop(self, addon, workflows):
        addon.status.checksum = addon.calculate_checksum()
        addon.set_install_status(Phase.RUNNING)

        changed = await ChecksumGate().evaluate(addon, workflows)

        assert changed is False
        assert addon.get_install_status() is Phase.RUNNING
        workflows.delete_owned_workflows.assert_not_awaited()

    async def test_spec_change_clears_previous_status(self, addon, workflows):
        addon.status.checksum = "stale"
        addon.status.start_time = 1
        addon.status.resources = [ObjectStatus(kind="Deployment", name="web")]
        addon.set_prereq_and_install_statuses(Phase.SUCCEEDED, "done")

        changed = await ChecksumGate().evaluate(addon, workflows)

        assert changed is True
        assert addon.status.resources == []
        assert addon.status.reason == {}
        assert addon.status.start_time > 1
        assert addon.get_install_status() is Phase.PENDING

    async def test_delete_failure_leaves_status(self, addon, workflows):
        addon.status.checksum = "stale"
        addon.set_install_status(Phase.SUCCEEDED)
        workflows.delete_owned_workflows.side_effect = RuntimeError("api down")

        with pytest.raises(RuntimeError):
            await ChecksumGate().evaluate(addon, workflows)

        assert addon.status.checksum == "stale"
        assert addon.get_install_status() is Phase.SUCCEEDED
