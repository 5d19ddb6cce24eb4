"""
ghostd installation and process control.

Downloads the latest ghost-core release for this platform, verifies it
against the published ``hashes.txt``, unpacks it under ``<gv_home>/daemon/``
and records the binary path and digest in the operator config. Also starts,
stops and inspects the daemon process.
"""

import asyncio
import hashlib
import os
import platform
import shutil
import sys
import tarfile
from pathlib import Path
from typing import Optional

import aiohttp
import structlog
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
)

from ..core.config import ConfigStore, settings
from ..core.constants import (
    DAEMON_BASE_URL,
    DAEMON_PID_FILE,
    DAEMON_SETTINGS_FILE,
    GV_SETTINGS_FILE,
    LATEST_RELEASE_URL,
    TMP_PATH,
)
from ..core.exceptions import DaemonInstallError, RPCAuthError
from .node_client import NodeClient


logger = structlog.get_logger(__name__)

DEFAULT_GV_SETTINGS = """\
RPC_WALLET = ""
CLI_ADDRESS = "127.0.0.1:50051"
EXT_PUB_KEY = ""
EXT_PUB_KEY_LABEL = ""
REWARD_ADDRESS = ""
ANON_MODE = false
ANON_REWARD_ADDRESS = ""
TELOXIDE_TOKEN = ""
TELEGRAM_USER = ""
DAEMON_PATH = ""
DAEMON_HASH = ""
INTERNAL_ANON = ""
MIN_REWARD_PAYOUT = 10000000
MNEMONIC = ""
REWARD_INTERVAL = 900
ANNOUNCE_REWARDS = true
ANNOUNCE_STAKES = true
ANNOUNCE_ZAPS = true
TIMEZONE = "UTC"
"""

DEFAULT_DAEMON_CONF = """\
addressindex=1
server=1
rpcuser=user
rpcpassword=password
rpcbind=127.0.0.1
rpcallowip=127.0.0.1
rpcport=51725
rpcservertimeout=120
rpcthreads=64
zmqpubhashblock=tcp://127.0.0.1:28332
zmqpubhashwtx=tcp://127.0.0.1:28332
"""

DOWNLOAD_CHUNK_SIZE = 64 * 1024


def init_data_dirs(gv_home: Path, daemon_data_dir: Path) -> None:
    """Create the GhostVault home and a default ghost.conf when missing."""
    (gv_home / "daemon").mkdir(parents=True, exist_ok=True)
    settings_file = gv_home / GV_SETTINGS_FILE
    if not settings_file.exists():
        settings_file.write_text(DEFAULT_GV_SETTINGS)

    daemon_data_dir.mkdir(parents=True, exist_ok=True)
    daemon_conf = daemon_data_dir / DAEMON_SETTINGS_FILE
    if not daemon_conf.exists():
        daemon_conf.write_text(DEFAULT_DAEMON_CONF)


def get_triple(machine: Optional[str] = None, system: Optional[str] = None) -> str:
    """Release asset suffix for this CPU/OS pair."""
    arch = (machine or platform.machine()).lower()
    os_name = (system or platform.system()).lower()

    if arch in ("amd64", "x86_64"):
        arch = "x86_64"
    elif arch in ("arm64", "aarch64"):
        arch = "aarch64"
    elif arch.startswith("arm"):
        arch = "arm"

    triples = {
        ("x86_64", "linux"): "pc-linux-gnu",
        ("arm", "linux"): "linux-gnueabihf",
        ("aarch64", "linux"): "linux-gnu",
        ("x86_64", "darwin"): "MacOS64",
        ("aarch64", "darwin"): "MacOS64",
        ("x86_64", "windows"): "win64",
    }
    suffix = triples.get((arch, os_name))
    if suffix is None:
        raise DaemonInstallError("OS or CPU arch not supported", {"arch": arch, "os": os_name})
    return f"{arch}-{suffix}"


def sha256_digest(path: Path) -> str:
    """Lowercase hex sha256 of a file."""
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(DOWNLOAD_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def digest_matches(file_path: Path, hashes_path: Path) -> bool:
    """True if ``hashes.txt`` lists ``file_path`` with its actual digest."""
    file_hash = sha256_digest(file_path)
    for line in hashes_path.read_text().splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[-1] == file_path.name and parts[0] == file_hash:
            return True
    return False


def extract_archive(archive_path: Path, gv_home: Path) -> Path:
    """Unpack the release under ``<gv_home>/daemon/`` and locate ghostd."""
    logger.info("Extracting Ghost daemon...")
    daemon_dir = gv_home / "daemon"
    with tarfile.open(archive_path, "r:gz") as tar:
        tar.extractall(daemon_dir, filter="data")

    binary = "ghostd.exe" if sys.platform == "win32" else "ghostd"
    for candidate in daemon_dir.rglob(binary):
        if candidate.is_file():
            return candidate.resolve()

    raise DaemonInstallError("ghostd not found in archive", {"archive": str(archive_path)})


def pid_exists(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class DaemonManager:
    """Installs, launches and stops ghostd."""

    def __init__(self, config: ConfigStore, retry_delay: Optional[int] = None):
        self.config = config
        self.retry_delay = retry_delay if retry_delay is not None else settings.remote_retry_delay
        self.tmp_path = Path(TMP_PATH)
        self.logger = logger.bind(service="daemon_manager")

    async def get_latest_release(self) -> str:
        """Latest ghost-core version, read from the release redirect."""
        async with aiohttp.ClientSession() as session:
            async with session.get(LATEST_RELEASE_URL, allow_redirects=True) as response:
                final_url = str(response.url)
        version = final_url.rstrip("/").split("/")[-1]
        return version[1:] if version.startswith("v") else version

    async def download_file(self, url: str, destination: Path, with_progress: bool = False) -> Path:
        """Stream ``url`` to ``destination``, retrying the request up to 3 times."""
        last_error: Optional[Exception] = None
        async with aiohttp.ClientSession() as session:
            for attempt in range(4):
                try:
                    async with session.get(url) as response:
                        if response.status != 200:
                            raise DaemonInstallError(
                                f"Failed to download file, status code: {response.status}",
                                {"url": url},
                            )
                        total = int(response.headers.get("Content-Length", 0))
                        with open(destination, "wb") as f:
                            if with_progress:
                                await self._stream_with_progress(response, f, total)
                            else:
                                async for chunk in response.content.iter_chunked(DOWNLOAD_CHUNK_SIZE):
                                    f.write(chunk)
                    return destination.resolve()
                except aiohttp.ClientError as e:
                    last_error = e
                    self.logger.error("Failed to download file, retrying", url=url, attempt=attempt + 1, error=str(e))
                    await asyncio.sleep(1)

        raise DaemonInstallError(f"Failed to download file: {last_error}", {"url": url})

    async def _stream_with_progress(self, response: aiohttp.ClientResponse, f, total: int) -> None:
        columns = (
            TextColumn("Downloading ghostd"),
            BarColumn(),
            DownloadColumn(),
            TimeRemainingColumn(),
        )
        with Progress(*columns) as progress:
            task = progress.add_task("download", total=total or None)
            async for chunk in response.content.iter_chunked(DOWNLOAD_CHUNK_SIZE):
                f.write(chunk)
                progress.update(task, advance=len(chunk))

    async def download_daemon(self) -> Path:
        """Fetch the latest release tarball (reusing a verified cached copy)."""
        version = await self.get_latest_release()
        triple = get_triple()
        file_name = f"ghost-{version}-{triple}.tar.gz"
        self.tmp_path.mkdir(parents=True, exist_ok=True)

        hashes_path = self.tmp_path / f"v{version}-hashes.txt"
        if not hashes_path.exists():
            await self.download_file(f"{DAEMON_BASE_URL}v{version}/hashes.txt", hashes_path)

        file_path = self.tmp_path / file_name
        if file_path.exists() and digest_matches(file_path, hashes_path):
            return file_path

        await self.download_file(f"{DAEMON_BASE_URL}v{version}/{file_name}", file_path, with_progress=True)
        if not digest_matches(file_path, hashes_path):
            raise DaemonInstallError("Downloaded archive does not match hashes.txt", {"file": file_name})
        return file_path

    async def install(self) -> Path:
        """Download, verify and unpack ghostd; record its path and hash."""
        shutil.rmtree(self.tmp_path, ignore_errors=True)

        while True:
            try:
                archive = await self.download_daemon()
                break
            except (DaemonInstallError, aiohttp.ClientError) as e:
                self.logger.error("Error downloading daemon, retrying", error=str(e), retry_in=self.retry_delay)
                await asyncio.sleep(self.retry_delay)

        return await self.install_archive(archive)

    async def install_archive(self, archive: Path) -> Path:
        """Replace ``<gv_home>/daemon`` with the contents of ``archive``."""
        conf = await self.config.read()
        gv_home = conf.gv_home

        shutil.rmtree(gv_home / "daemon", ignore_errors=True)
        daemon_path = await asyncio.to_thread(extract_archive, archive, gv_home)
        daemon_hash = await asyncio.to_thread(sha256_digest, daemon_path)

        await self.config.update_many({"DAEMON_PATH": str(daemon_path), "DAEMON_HASH": daemon_hash})
        self.logger.info("Ghost daemon installed", path=str(daemon_path))
        return daemon_path

    async def verify_binary(self) -> bool:
        conf = await self.config.read()
        if not conf.daemon_path.is_file() or not conf.daemon_hash:
            return False
        return await asyncio.to_thread(sha256_digest, conf.daemon_path) == conf.daemon_hash

    async def start_daemon(self) -> None:
        """Launch ghostd in daemon mode, reinstalling it when missing or tampered."""
        conf = await self.config.read()
        if not conf.daemon_path.is_file():
            self.logger.error("ghostd not found! Attempting to download...")
            await self.install()
        elif not await self.verify_binary():
            self.logger.error("ghostd corruption detected! Fetching daemon clean!")
            await self.install()

        conf = await self.config.read()
        daemon_conf = conf.daemon_data_dir / DAEMON_SETTINGS_FILE
        process = await asyncio.create_subprocess_exec(
            str(conf.daemon_path),
            f"-datadir={conf.daemon_data_dir}",
            f"-conf={daemon_conf}",
            "-daemon",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await process.wait()
        self.logger.info("Ghost daemon started")
        await asyncio.sleep(3)

    async def stop_daemon_cli(self) -> None:
        """Stop ghostd via ghost-cli when the RPC path is not usable."""
        conf = await self.config.read()
        daemon_path = str(conf.daemon_path)
        if not daemon_path.endswith("d"):
            raise DaemonInstallError("Invalid daemon path", {"path": daemon_path})

        cli_path = Path(f"{daemon_path[:-1]}-cli")
        if not cli_path.exists():
            raise DaemonInstallError("ghost-cli not found", {"path": str(cli_path)})

        process = await asyncio.create_subprocess_exec(
            str(cli_path),
            f"-datadir={conf.daemon_data_dir}",
            f"-conf={conf.daemon_data_dir / DAEMON_SETTINGS_FILE}",
            "stop",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()
        if process.returncode != 0:
            raise DaemonInstallError("ghost-cli stop failed", {"stderr": stderr.decode(errors="replace")})

    async def stop_daemon(self, node: NodeClient) -> None:
        """Stop ghostd over RPC (ghost-cli when RPC auth fails) and wait for exit."""
        if not await self.is_running():
            self.logger.info("Ghost daemon is down")
            return

        self.logger.info("Sending Ghost daemon the shutdown signal...")
        try:
            await node.stop()
        except RPCAuthError:
            self.logger.info("Stopping by RPC failed, attempting via ghost-cli...")
            await self.stop_daemon_cli()

        await self.wait_for_daemon_shutdown()

    async def get_pid(self) -> int:
        conf = await self.config.read()
        pid_file = conf.daemon_data_dir / DAEMON_PID_FILE
        if not pid_file.exists():
            return 0
        try:
            return int(pid_file.read_text().strip())
        except ValueError:
            return 0

    async def is_running(self) -> bool:
        return pid_exists(await self.get_pid())

    async def wait_for_daemon_shutdown(self, poll_interval: float = 1.0) -> None:
        pid = await self.get_pid()
        self.logger.info("Waiting for Ghost daemon to shutdown...")
        while pid_exists(pid):
            await asyncio.sleep(poll_interval)
        self.logger.info("Ghost daemon is fully shut down...")

    async def get_daemon_version(self) -> str:
        """Version reported by ``ghostd --version``, e.g. ``0.21.1``."""
        conf = await self.config.read()
        if not conf.daemon_path.is_file():
            self.logger.error("ghostd not found! Attempting to download...")
            await self.install()
            conf = await self.config.read()

        process = await asyncio.create_subprocess_exec(
            str(conf.daemon_path),
            "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise DaemonInstallError(
                "Command failed", {"stderr": stderr.decode(errors="replace")}
            )
        return parse_version_output(stdout.decode())


def parse_version_output(output: str) -> str:
    """``Ghost Core Daemon version v0.21.1.0-abc`` -> ``0.21.1``."""
    first_line = output.splitlines()[0] if output else ""
    version = first_line.split(" ")[-1]
    if version.startswith("v"):
        version = version[1:]
    version = version.split("-")[0]
    return version.removesuffix(".0")
