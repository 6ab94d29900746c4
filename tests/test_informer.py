"""Unit tests for informer.py - List+watch object cache."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from kubernetes_asyncio.client import ApiException

from informer import Informer


def obj(name, version="1", namespace="ns"):
    return {"metadata": {"name": name, "namespace": namespace, "resourceVersion": version}}


@pytest.fixture
def kube():
    kube = MagicMock()
    kube.custom.list_namespaced_custom_object = AsyncMock(
        return_value={"metadata": {"resourceVersion": "10"}, "items": [obj("a"), obj("b")]}
    )
    return kube


@pytest.fixture
def informer(kube):
    return Informer(
        kube,
        kind="Workflow",
        api="custom",
        method="list_namespaced_custom_object",
        args=("argoproj.io", "v1alpha1", "ns", "workflows"),
        retry_delay=0.01,
    )


class TestStore:
    """Tests for store maintenance."""

    def test_apply_added_and_deleted(self, informer):
        informer.apply("ADDED", obj("a"))
        assert informer.get("ns", "a") is not None
        informer.apply("DELETED", obj("a"))
        assert informer.get("ns", "a") is None

    def test_handlers_called(self, informer):
        handler = MagicMock()
        informer.add_handler(handler)
        informer.apply("MODIFIED", obj("a"))
        handler.assert_called_once_with("MODIFIED", obj("a"))

    def test_handler_error_isolated(self, informer):
        failing = MagicMock(side_effect=RuntimeError("boom"))
        second = MagicMock()
        informer.add_handler(failing)
        informer.add_handler(second)
        informer.apply("ADDED", obj("a"))
        second.assert_called_once()
        assert informer.get("ns", "a") is not None

    def test_watch_event_tracks_resource_version(self, informer):
        informer._handle_watch_event({"type": "MODIFIED", "object": obj("a", "42")})
        assert informer.resource_version == "42"
        assert informer.get("ns", "a")["metadata"]["resourceVersion"] == "42"

    def test_bookmark_not_stored(self, informer):
        informer._handle_watch_event({"type": "BOOKMARK", "object": obj("a", "50")})
        assert informer.resource_version == "50"
        assert informer.get("ns", "a") is None

    def test_expired_watch_forces_relist(self, informer):
        informer.resource_version = "5"
        informer._handle_watch_event(
            {"type": "ERROR", "object": {"code": 410, "message": "too old"}}
        )
        assert informer.resource_version is None


@pytest.mark.asyncio
class TestList:
    """Tests for listing and syncing."""

    async def test_relist(self, informer):
        handler = MagicMock()
        informer.add_handler(handler)

        await informer.relist()

        assert informer.has_synced()
        assert informer.resource_version == "10"
        assert informer.get("ns", "a") is not None
        assert informer.get("ns", "b") is not None
        assert handler.call_count == 2

    async def test_relist_drops_vanished(self, informer, kube):
        informer.apply("ADDED", obj("gone"))
        handler = MagicMock()
        informer.add_handler(handler)

        await informer.relist()

        assert informer.get("ns", "gone") is None
        handler.assert_any_call("DELETED", obj("gone"))

    async def test_relist_typed_result(self, kube):
        item = MagicMock()
        result = MagicMock()
        result.items = [item]
        result.metadata.resource_version = "7"
        kube.apps.list_namespaced_deployment = AsyncMock(return_value=result)
        kube.to_dict = MagicMock(return_value=obj("web"))
        informer = Informer(
            kube, kind="Deployment", api="apps", method="list_namespaced_deployment", args=("ns",)
        )

        await informer.relist()

        assert informer.resource_version == "7"
        assert informer.get("ns", "web") is not None
        kube.to_dict.assert_called_once_with(item)

    async def test_wait_for_sync_timeout(self, informer):
        assert await informer.wait_for_sync(0.01) is False
        await informer.relist()
        assert await informer.wait_for_sync(0.01) is True


@pytest.mark.asyncio
class TestRun:
    """Tests for the watch loop."""

    async def test_lists_then_watches(self, informer, kube):
        shutdown = asyncio.Event()
        events = [{"type": "ADDED", "object": obj("c", "11")}]

        async def watch(list_fn, *args, resource_version=None, timeout_seconds=300):
            assert resource_version == "10"
            for event in events:
                yield event
            shutdown.set()

        kube.watch = watch

        await asyncio.wait_for(informer.run(shutdown), 1)

        assert informer.get("ns", "c") is not None
        assert informer.resource_version == "11"

    async def test_gone_relists(self, informer, kube):
        shutdown = asyncio.Event()
        calls = []

        async def watch(list_fn, *args, resource_version=None, timeout_seconds=300):
            calls.append(resource_version)
            if len(calls) == 1:
                raise ApiException(status=410, reason="Gone")
            shutdown.set()
            return
            yield

        kube.watch = watch

        await asyncio.wait_for(informer.run(shutdown), 1)

        assert kube.custom.list_namespaced_custom_object.await_count == 2
        assert calls == ["10", "10"]

    async def test_api_error_retries(self, informer, kube):
        shutdown = asyncio.Event()
        calls = []

        async def watch(list_fn, *args, resource_version=None, timeout_seconds=300):
            calls.append(resource_version)
            if len(calls) == 1:
                raise ApiException(status=500, reason="boom")
            shutdown.set()
            return
            yield

        kube.watch = watch

        await asyncio.wait_for(informer.run(shutdown), 1)

        assert len(calls) == 2
        assert kube.custom.list_namespaced_custom_object.await_count == 1
