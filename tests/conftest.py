"""Pytest configuration and fixtures."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from models import Addon

PREREQS_TEMPLATE = """
apiVersion: argoproj.io/v1alpha1
kind: Workflow
metadata:
  generateName: prereqs-
spec:
  entrypoint: main
  templates:
    - name: main
      container:
        image: alpine
"""

INSTALL_TEMPLATE = """
apiVersion: argoproj.io/v1alpha1
kind: Workflow
spec:
  entrypoint: install
  arguments:
    parameters:
      - name: namespace
        value: overridden
  templates:
    - name: install
      container:
        image: alpine
"""

DELETE_TEMPLATE = """
apiVersion: argoproj.io/v1alpha1
kind: Workflow
spec:
  entrypoint: delete
  templates:
    - name: delete
      container:
        image: alpine
"""


@pytest.fixture
def addon_dict():
    """Sample Addon custom resource as returned by the API server."""
    return {
        "apiVersion": "addonmgr.no8s.io/v1alpha1",
        "kind": "Addon",
        "metadata": {
            "name": "event-router",
            "namespace": "addon-manager-system",
            "uid": "1234-5678",
            "resourceVersion": "100",
            "generation": 1,
        },
        "spec": {
            "pkgName": "event-router",
            "pkgVersion": "v0.2",
            "pkgType": "composite",
            "pkgDescription": "Event router",
            "params": {
                "namespace": "addon-event-router-ns",
                "context": {
                    "clusterName": "cluster-a",
                    "clusterRegion": "us-west-2",
                },
                "data": {"foo": "bar"},
            },
            "lifecycle": {
                "prereqs": {"template": PREREQS_TEMPLATE},
                "install": {"template": INSTALL_TEMPLATE},
                "delete": {"template": DELETE_TEMPLATE},
            },
        },
    }


@pytest.fixture
def addon(addon_dict):
    """Parsed sample addon."""
    return Addon.from_dict(addon_dict)


@pytest.fixture
def mock_kube():
    """Mock cluster client."""
    kube = MagicMock()
    kube.get_addon = AsyncMock(return_value=None)
    kube.replace_addon_status = AsyncMock(return_value={})
    kube.set_addon_finalizers = AsyncMock(return_value={})
    kube.create_workflow = AsyncMock(return_value={})
    kube.list_workflows = AsyncMock(return_value={"items": []})
    kube.delete_workflow = AsyncMock()
    kube.list_secret_names = AsyncMock(return_value=[])
    kube.create_event = AsyncMock()
    kube.list_workloads = AsyncMock(return_value=[])
    return kube


@pytest.fixture
def mock_recorder():
    """Mock event recorder."""
    recorder = MagicMock()
    recorder.event = AsyncMock()
    recorder.normal = AsyncMock()
    recorder.warning = AsyncMock()
    return recorder


@pytest.fixture
def mock_informer():
    """Mock workflow informer with an empty store."""
    informer = MagicMock()
    informer.get = MagicMock(return_value=None)
    return informer
