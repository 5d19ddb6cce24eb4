"""
GhostVault daemon entry point.

Boot order: data directories, logging, single-instance pid file, operator
config (bot credentials from the environment win), node binary, node
startup, wallet checks, store with readiness written as not-ready, then the
reconciler, the internal RPC server and the background workers.
"""

import asyncio
import os
from pathlib import Path
from typing import List, Optional

import structlog
import typer
import uvicorn
from rich.console import Console

from .api.client import GVClient
from .api.main import create_app
from .core.config import ConfigStore, settings
from .core.constants import GV_PID_FILE
from .core.logging import setup_logging
from .core.store import Store
from .indexer.remote_block_poller import RemoteBlockPoller
from .indexer.zmq_listener import ZmqListener
from .models.records import ServerReadiness, TaskName
from .reconciler.daemon_state import DaemonState
from .reconciler.operator import OperatorService
from .reconciler.reconciler import Reconciler
from .scheduler.task_scheduler import TaskScheduler
from .services.daemon_installer import DaemonManager, init_data_dirs, pid_exists
from .services.node_client import NodeClient
from .services.remote_nodes import RemoteNodes
from .services.telegram_notifier import TelegramNotifier
from .services.wallet_service import WalletService


logger = structlog.get_logger(__name__)
console = Console()


def read_pid(pid_file: Path) -> int:
    try:
        return int(pid_file.read_text().strip())
    except (OSError, ValueError):
        return 0


async def apply_env_bot_credentials(config: ConfigStore) -> None:
    """``TELOXIDE_TOKEN`` / ``GV_TG_USER`` from the environment override the settings file."""
    updates = {}
    if settings.bot_token:
        updates["TELOXIDE_TOKEN"] = settings.bot_token
    if settings.tg_user:
        updates["TELEGRAM_USER"] = settings.tg_user
    if updates:
        await config.update_many(updates)


async def self_update() -> None:
    """Self updates are distributed with the package manager."""


class GhostVault:
    """Owns every long-lived component of the daemon process."""

    def __init__(self):
        self.config: Optional[ConfigStore] = None
        self.store: Optional[Store] = None
        self.node: Optional[NodeClient] = None
        self.server: Optional[uvicorn.Server] = None
        self.client: Optional[GVClient] = None
        self.workers: List[asyncio.Task] = []
        self.components: List = []
        self.exit_code = 0
        self.logger = logger.bind(service="ghostvault")

    def request_exit(self) -> None:
        if self.server is not None:
            self.server.should_exit = True

    def fatal_exit(self) -> None:
        self.exit_code = 1
        self.request_exit()

    async def startup(self, first_run: bool) -> None:
        self.config = ConfigStore.from_settings(settings)
        await apply_env_bot_credentials(self.config)

        installer = DaemonManager(self.config)
        conf = await self.config.read()
        if not conf.daemon_path.is_file():
            self.logger.info("Ghost daemon not found, fetching...")
            await installer.install()

        self.node = NodeClient(self.config, "cold", on_connection_refused=installer.start_daemon)

        if first_run and await installer.is_running():
            # A daemon started before ghost.conf was written must reload it
            await installer.stop_daemon(self.node)
            await asyncio.sleep(1)

        await self.node.wait_for_daemon_startup()

        wallet = WalletService(self.node, self.config)
        await wallet.check_wallets()

        self.store = Store(settings.database_url)
        await self.store.initialize()
        await self.store.set_readiness(ServerReadiness(ready=False, daemon_ready=False))

        state = DaemonState()
        remote = RemoteNodes()
        reconciler = Reconciler(
            self.store, self.config, self.node, state, remote, wallet, installer,
            on_fatal=self.fatal_exit,
        )
        operator = OperatorService(
            self.store, self.config, self.node, state, reconciler, wallet, installer,
            request_exit=self.request_exit,
        )

        await reconciler.initialize()

        app = create_app(operator, self.store)
        self.server = uvicorn.Server(uvicorn.Config(
            app,
            host=settings.cli_host,
            port=settings.cli_port,
            log_config=None,
            access_log=False,
        ))

        client = self.client = GVClient()
        scheduler = TaskScheduler(
            self.store,
            self.config,
            actions={
                TaskName.DAEMON_UPDATE: operator.process_daemon_update,
                TaskName.SELF_UPDATE: self_update,
                TaskName.PROCESS_REWARDS: operator.run_payouts,
            },
            on_ready=operator.start_server_tasks,
            readiness_probe=client.getblockcount,
        )
        zmq_listener = ZmqListener(self.config, self.store, client)
        remote_poller = RemoteBlockPoller(remote, self.store, client)
        notifier = TelegramNotifier(self.store, self.config)

        self.workers = [
            asyncio.create_task(scheduler.start()),
            asyncio.create_task(zmq_listener.start()),
            asyncio.create_task(remote_poller.start()),
            asyncio.create_task(notifier.run()),
        ]
        self.components = [scheduler, zmq_listener, remote_poller, notifier, reconciler]

    async def shutdown(self) -> None:
        for component in self.components:
            try:
                await component.stop()
            except Exception as e:
                self.logger.error("Error stopping component", component=type(component).__name__, error=str(e))

        for worker in self.workers:
            worker.cancel()
        if self.workers:
            await asyncio.gather(*self.workers, return_exceptions=True)

        if self.client is not None:
            await self.client.close()
        if self.node is not None:
            await self.node.close()
        if self.store is not None:
            await self.store.close()
        self.logger.info("GhostVault stopped")

    async def run(self, first_run: bool) -> None:
        try:
            await self.startup(first_run)
            self.logger.info("Starting CLI server...", address=settings.cli_address)
            await self.server.serve()
        finally:
            await self.shutdown()


cli = typer.Typer(help="GhostVault daemon")


@cli.command()
def run(
    gv_data_dir: Optional[Path] = typer.Option(None, help="GhostVault's data directory."),
    daemon_data_dir: Optional[Path] = typer.Option(None, help="Ghost daemon data directory."),
):
    """Run GhostVault in the foreground."""
    if gv_data_dir is not None:
        settings.gv_home = gv_data_dir
    if daemon_data_dir is not None:
        settings.daemon_data_dir = daemon_data_dir

    gv_home = settings.gv_home_path
    first_run = not gv_home.exists()
    init_data_dirs(gv_home, settings.daemon_data_path)

    setup_logging(str(settings.log_path))
    console.print("[bold]GhostVault[/bold] https://ghostprivacy.net")

    pid_file = gv_home / GV_PID_FILE
    running_pid = read_pid(pid_file)
    if running_pid and running_pid != os.getpid() and pid_exists(running_pid) and not settings.is_docker:
        logger.info("Detected running GhostVault instance, exiting", pid=running_pid)
        raise typer.Exit(0)
    pid_file.write_text(str(os.getpid()))

    vault = GhostVault()
    try:
        asyncio.run(vault.run(first_run))
    finally:
        pid_file.unlink(missing_ok=True)
    if vault.exit_code:
        raise typer.Exit(vault.exit_code)


if __name__ == "__main__":
    cli()
