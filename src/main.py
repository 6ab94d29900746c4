"""
Main entry point for the Addon Manager controller.

Wires the cluster client, version cache, informers and reconciler into the
controller, serves the health probes and handles shutdown signals.
"""

import asyncio
import logging
import signal
from typing import Optional

import click
import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from config import Config, get_config
from controller import Controller
from events import EventRecorder
from kube import KubeClient
from reconciler import AddonReconciler
from version_cache import VersionCache
from workflows import new_workflow_informer

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_health_app(application: "Application") -> FastAPI:
    """Build the liveness and readiness probe app."""
    app = FastAPI(title="addon-manager", docs_url=None, redoc_url=None)

    @app.get("/healthz")
    async def healthz():
        """Liveness probe."""
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz():
        """Readiness probe; ready once every informer cache is filled, until shutdown."""
        if application.ready():
            return {"status": "ok"}
        return JSONResponse(status_code=503, content={"status": "not ready"})

    return app


class Application:
    """Main application that orchestrates the controller and health server."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.kube: Optional[KubeClient] = None
        self.cache: Optional[VersionCache] = None
        self.controller: Optional[Controller] = None
        self.server: Optional[uvicorn.Server] = None
        self.running = False

    def ready(self) -> bool:
        return (
            self.controller is not None
            and self.controller.has_synced()
            and not self.controller.queue.shutting_down
        )

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing Addon Manager")

        self.kube = KubeClient(self.config.kube.kubeconfig)
        await self.kube.connect()

        namespace = self.config.kube.watch_namespace
        ctrl_config = self.config.controller

        self.cache = VersionCache()
        recorder = EventRecorder(self.kube)
        workflow_informer = new_workflow_informer(
            self.kube, namespace, ctrl_config.watch_timeout_seconds
        )
        reconciler = AddonReconciler(
            self.kube, self.cache, workflow_informer, recorder, ctrl_config
        )
        self.controller = Controller(
            self.kube, reconciler, workflow_informer, namespace, ctrl_config
        )

        server_config = uvicorn.Config(
            create_health_app(self),
            host=self.config.server.host,
            port=self.config.server.port,
            log_level="warning",
        )
        self.server = uvicorn.Server(server_config)

        logger.info(f"Watching addons in namespace {namespace}")
        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting Addon Manager")
        logger.info(
            f"Serving health probes on {self.config.server.host}:{self.config.server.port}"
        )

        tasks = [
            asyncio.create_task(self.controller.start()),
            asyncio.create_task(self._serve_health()),
        ]

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def _serve_health(self):
        await self.server.serve()
        # The server exits on SIGINT/SIGTERM; take the controller down with it
        await self.stop()

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping Addon Manager")
        self.running = False

        if self.controller:
            await self.controller.stop()

        if self.server:
            self.server.should_exit = True

        if self.kube:
            await self.kube.close()

        logger.info("Addon Manager stopped")


async def main(config: Optional[Config] = None):
    """Main entry point."""
    app = Application(config)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def parse_address(address: str) -> tuple:
    """Split a ``host:port`` bind address. An empty host binds all interfaces."""
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise click.BadParameter(f"expected host:port, got {address!r}")
    return host or "0.0.0.0", int(port)


@click.command()
@click.option("--debug", is_flag=True, help="Enable debug logging.")
@click.option(
    "--watch-namespace",
    default=None,
    help="Namespace to watch for addons. Defaults to $WATCH_NAMESPACE.",
)
@click.option(
    "--health-addr",
    default=None,
    help="Address the health probe endpoint binds to, e.g. :8081.",
)
def cli(debug: bool, watch_namespace: Optional[str], health_addr: Optional[str]):
    """Run the Addon Manager controller."""
    config = get_config()

    if watch_namespace:
        config.kube.watch_namespace = watch_namespace
    if health_addr:
        config.server.host, config.server.port = parse_address(health_addr)

    level = "DEBUG" if debug else config.server.log_level.upper()
    logging.getLogger().setLevel(level)

    asyncio.run(main(config))


if __name__ == "__main__":
    cli()
