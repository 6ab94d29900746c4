"""Unit tests for reconciler.py - Addon reconcile pass."""

from unittest.mock import AsyncMock

import aiohttp
import pytest
from kubernetes_asyncio.client import ApiException

from config import ControllerConfig
from errors import AddonValidationError
from models import FINALIZER_NAME, OWN_LABEL, Addon, Phase, ReconcileResult, Request
from reconciler import STATUS_UPDATE_REQUEUE, AddonReconciler
from version_cache import Version, VersionCache

REQUEST = Request(namespace="addon-manager-system", name="event-router")


@pytest.fixture
def cache():
    return VersionCache()


@pytest.fixture
def reconciler(mock_kube, cache, mock_informer, mock_recorder):
    return AddonReconciler(
        mock_kube, cache, mock_informer, mock_recorder, ControllerConfig()
    )


def written_status(mock_kube):
    """Status dict from the last status write."""
    return mock_kube.replace_addon_status.await_args.args[2]


@pytest.mark.asyncio
class TestReconcile:
    """Tests for AddonReconciler.reconcile."""

    async def test_not_found_clears_cache(self, reconciler, mock_kube, cache):
        cache.add_version(
            Version(
                name="event-router",
                namespace="addon-manager-system",
                pkg_name="event-router",
                pkg_version="v0.2",
            )
        )
        mock_kube.get_addon.return_value = None

        result = await reconciler.reconcile(REQUEST)

        assert result == ReconcileResult()
        assert cache.get_all_versions() == []

    async def test_get_failure_is_retried(self, reconciler, mock_kube):
        mock_kube.get_addon.side_effect = aiohttp.ClientError("connection reset")

        result = await reconciler.reconcile(REQUEST)

        assert isinstance(result.error, aiohttp.ClientError)
        assert not result.fatal

    async def test_new_addon_is_reset_and_requeued(
        self, reconciler, mock_kube, addon_dict, cache
    ):
        mock_kube.get_addon.return_value = addon_dict

        result = await reconciler.reconcile(REQUEST)

        assert result.requeue is True
        assert result.success
        status = written_status(mock_kube)
        assert status["checksum"] == Addon.from_dict(addon_dict).calculate_checksum()
        assert status["lifecycle"] == {"prereqs": "Pending", "installed": "Pending"}
        assert status["starttime"] > 0
        mock_kube.create_workflow.assert_not_awaited()
        assert cache.get_version("event-router", "v0.2").phase is Phase.PENDING

    async def test_second_pass_submits_prereqs(self, reconciler, mock_kube, addon_dict):
        mock_kube.get_addon.return_value = addon_dict
        await reconciler.reconcile(REQUEST)
        addon_dict["status"] = written_status(mock_kube)

        result = await reconciler.reconcile(REQUEST)

        assert result.requeue_after == 30
        assert written_status(mock_kube)["lifecycle"]["prereqs"] == "Running"
        mock_kube.create_workflow.assert_awaited_once()
        mock_kube.set_addon_finalizers.assert_awaited_once()

    async def test_spec_change_deletes_workflows(self, reconciler, mock_kube, addon_dict):
        addon_dict["status"] = {
            "checksum": "previous",
            "lifecycle": {"prereqs": "Succeeded", "installed": "Succeeded"},
        }
        mock_kube.get_addon.return_value = addon_dict
        mock_kube.list_workflows.return_value = {
            "items": [{"metadata": {"name": "event-router-install-previous-wf"}}]
        }

        result = await reconciler.reconcile(REQUEST)

        assert result.requeue is True
        mock_kube.delete_workflow.assert_awaited_once_with(
            "addon-manager-system", "event-router-install-previous-wf"
        )
        assert written_status(mock_kube)["lifecycle"]["installed"] == "Pending"

    async def test_validation_error_is_retried_and_persisted(
        self, reconciler, mock_kube, addon_dict
    ):
        addon_dict["spec"]["pkgType"] = "rpm"
        addon_dict["status"] = {
            "checksum": Addon.from_dict(addon_dict).calculate_checksum(),
        }
        mock_kube.get_addon.return_value = addon_dict

        result = await reconciler.reconcile(REQUEST)

        assert isinstance(result.error, AddonValidationError)
        assert not result.fatal
        assert written_status(mock_kube)["lifecycle"]["installed"] == "Validation Failed"

    async def test_status_write_failure_requeues(self, reconciler, mock_kube, addon_dict):
        mock_kube.get_addon.return_value = addon_dict
        mock_kube.replace_addon_status.side_effect = ApiException(status=500, reason="boom")

        result = await reconciler.reconcile(REQUEST)

        assert result.requeue_after == STATUS_UPDATE_REQUEUE
        assert isinstance(result.error, ApiException)
        assert not result.fatal

    async def test_unexpected_error_is_fatal(self, reconciler, mock_kube, addon_dict):
        mock_kube.get_addon.return_value = addon_dict
        reconciler.gate.evaluate = AsyncMock(side_effect=KeyError("bug"))

        result = await reconciler.reconcile(REQUEST)

        assert result.fatal
        assert isinstance(result.error, KeyError)

    async def test_malformed_addon_is_fatal(self, reconciler, mock_kube):
        mock_kube.get_addon.return_value = {"metadata": {}}

        result = await reconciler.reconcile(REQUEST)

        assert result.fatal


@pytest.mark.asyncio
class TestReconcileDeletion:
    """Tests for the deletion path."""

    @pytest.fixture
    def deleting_dict(self, addon_dict):
        addon_dict["metadata"]["deletionTimestamp"] = "2024-01-15T10:30:00Z"
        addon_dict["metadata"]["finalizers"] = [FINALIZER_NAME]
        addon_dict["status"] = {
            "checksum": Addon.from_dict(addon_dict).calculate_checksum(),
            "lifecycle": {"prereqs": "Succeeded", "installed": "Succeeded"},
        }
        return addon_dict

    async def test_marks_deleting_first(self, reconciler, mock_kube, deleting_dict):
        mock_kube.get_addon.return_value = deleting_dict

        result = await reconciler.reconcile(REQUEST)

        assert result.requeue is True
        assert written_status(mock_kube)["lifecycle"]["installed"] == "Deleting"
        mock_kube.create_workflow.assert_not_awaited()

    async def test_runs_delete_workflow(self, reconciler, mock_kube, deleting_dict, cache):
        deleting_dict["status"]["lifecycle"]["installed"] = "Deleting"
        mock_kube.get_addon.return_value = deleting_dict
        cache.add_version(Version.from_addon(Addon.from_dict(deleting_dict)))

        result = await reconciler.reconcile(REQUEST)

        assert result.requeue_after == 30
        assert cache.get_all_versions() == []
        mock_kube.create_workflow.assert_awaited_once()
        assert written_status(mock_kube)["lifecycle"]["installed"] == "Deleting"
        mock_kube.set_addon_finalizers.assert_not_awaited()

    async def test_finalizer_removed_after_delete_succeeded(
        self, reconciler, mock_kube, mock_informer, deleting_dict
    ):
        deleting_dict["status"]["lifecycle"]["installed"] = "Deleting"
        mock_kube.get_addon.return_value = deleting_dict
        mock_informer.get.return_value = {
            "metadata": {"name": "wf"},
            "status": {"phase": "Succeeded"},
        }

        result = await reconciler.reconcile(REQUEST)

        assert result == ReconcileResult()
        mock_kube.set_addon_finalizers.assert_awaited_once_with(
            "addon-manager-system", "event-router", []
        )
        mock_kube.replace_addon_status.assert_not_awaited()

    async def test_delete_failed_does_not_loop(
        self, reconciler, mock_kube, mock_informer, deleting_dict
    ):
        deleting_dict["status"]["lifecycle"]["installed"] = "Delete Failed"
        mock_kube.get_addon.return_value = deleting_dict

        result = await reconciler.reconcile(REQUEST)

        assert result.success
        assert not result.requeue
        assert not result.requeue_after
        mock_kube.create_workflow.assert_not_awaited()
        mock_kube.set_addon_finalizers.assert_not_awaited()

    async def test_submit_failure_is_retried(
        self, reconciler, mock_kube, deleting_dict, mock_recorder
    ):
        deleting_dict["status"]["lifecycle"]["installed"] = "Deleting"
        mock_kube.get_addon.return_value = deleting_dict
        mock_kube.create_workflow.side_effect = ApiException(status=500, reason="boom")

        result = await reconciler.reconcile(REQUEST)

        assert result.error is not None
        assert not result.fatal
        assert written_status(mock_kube)["lifecycle"]["installed"] == "Delete Failed"
        mock_recorder.warning.assert_awaited()

    async def test_without_finalizer_nothing_to_do(
        self, reconciler, mock_kube, deleting_dict
    ):
        deleting_dict["metadata"]["finalizers"] = []
        mock_kube.get_addon.return_value = deleting_dict

        result = await reconciler.reconcile(REQUEST)

        assert result == ReconcileResult()
        mock_kube.replace_addon_status.assert_not_awaited()


class TestRequestMapping:
    """Tests for mapping owned objects to addon requests."""

    def test_maps_owned_object(self, reconciler, cache):
        cache.add_version(
            Version(
                name="event-router",
                namespace="addon-manager-system",
                pkg_name="event-router",
                pkg_version="v0.2",
            )
        )
        obj = {"metadata": {"name": "router", "labels": {OWN_LABEL: "event-router"}}}
        assert reconciler.map_object("Deployment", obj) == [REQUEST]

    def test_unlabeled_object(self, reconciler):
        assert reconciler.map_object("Deployment", {"metadata": {"name": "x"}}) == []

    def test_blank_label(self, reconciler):
        assert reconciler.requests_from_labels({OWN_LABEL: "  "}) == []

    def test_unknown_addon(self, reconciler):
        assert reconciler.requests_from_labels({OWN_LABEL: "nobody"}) == []

    def test_none_labels(self, reconciler):
        assert reconciler.requests_from_labels(None) == []
