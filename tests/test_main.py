"""Unit tests for main.py - Application wiring, health probes and CLI."""

from unittest.mock import AsyncMock, MagicMock, patch

import click
import pytest
from click.testing import CliRunner
from fastapi.testclient import TestClient

from config import Config
from main import Application, cli, create_health_app, parse_address


class TestHealthApp:
    """Tests for the health probe endpoints."""

    def test_healthz(self):
        app = Application(Config.default())
        client = TestClient(create_health_app(app))
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_readyz_before_start(self):
        app = Application(Config.default())
        client = TestClient(create_health_app(app))
        assert client.get("/readyz").status_code == 503

    def test_readyz_when_synced(self):
        app = Application(Config.default())
        app.controller = MagicMock()
        app.controller.has_synced.return_value = True
        app.controller.queue.shutting_down = False
        client = TestClient(create_health_app(app))
        assert client.get("/readyz").status_code == 200

    def test_readyz_while_shutting_down(self):
        app = Application(Config.default())
        app.controller = MagicMock()
        app.controller.has_synced.return_value = True
        app.controller.queue.shutting_down = True
        client = TestClient(create_health_app(app))
        assert client.get("/readyz").status_code == 503


class TestParseAddress:
    """Tests for bind address parsing."""

    def test_port_only(self):
        assert parse_address(":8081") == ("0.0.0.0", 8081)

    def test_host_and_port(self):
        assert parse_address("127.0.0.1:9000") == ("127.0.0.1", 9000)

    def test_invalid(self):
        with pytest.raises(click.BadParameter):
            parse_address("8081")


@pytest.mark.asyncio
class TestApplication:
    """Tests for Application lifecycle."""

    async def test_initialize_wires_components(self):
        with patch("main.KubeClient") as kube_cls:
            kube_cls.return_value.connect = AsyncMock()
            app = Application(Config.default())
            await app.initialize()

        kube_cls.assert_called_once_with(None)
        assert app.controller is not None
        assert app.controller.namespace == "addon-manager-system"
        assert app.server is not None
        assert not app.ready()

    async def test_stop(self):
        app = Application(Config.default())
        app.running = True
        app.controller = MagicMock()
        app.controller.stop = AsyncMock()
        app.server = MagicMock()
        app.kube = MagicMock()
        app.kube.close = AsyncMock()

        await app.stop()

        app.controller.stop.assert_awaited_once()
        assert app.server.should_exit is True
        app.kube.close.assert_awaited_once()

    async def test_stop_is_idempotent(self):
        app = Application(Config.default())
        app.kube = MagicMock()
        app.kube.close = AsyncMock()
        await app.stop()
        app.kube.close.assert_not_awaited()


class TestCli:
    """Tests for the command line."""

    def test_options_applied(self):
        cfg = Config.default()
        with patch("main.get_config", return_value=cfg), patch(
            "main.main", new=MagicMock(return_value=None)
        ) as entry, patch("main.asyncio.run") as run, patch(
            "main.logging.getLogger"
        ) as get_logger:
            result = CliRunner().invoke(
                cli, ["--debug", "--watch-namespace", "addons", "--health-addr", ":9090"]
            )

        assert result.exit_code == 0, result.output
        assert cfg.kube.watch_namespace == "addons"
        assert cfg.server.port == 9090
        run.assert_called_once()
        entry.assert_called_once_with(cfg)
        get_logger.return_value.setLevel.assert_called_once_with("DEBUG")

    def test_bad_health_addr(self):
        with patch("main.get_config", return_value=Config.default()), patch(
            "main.asyncio.run"
        ) as run:
            result = CliRunner().invoke(cli, ["--health-addr", "nope"])

        assert result.exit_code != 0
        run.assert_not_called()
