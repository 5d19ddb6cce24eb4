"""
Configuration management.

Two layers live here:

* ``Settings`` - process settings from the environment / ``.env`` via
  pydantic-settings (paths, listener address, intervals, logging).
* ``GVConfig`` / ``ConfigStore`` - operator settings that change at runtime
  (reward mode, payout thresholds, bot credentials...). They are persisted
  to ``gv_settings.toml`` in the GhostVault home directory and merged with
  the node credentials found in ``ghost.conf``.
"""

import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiorwlock
import structlog
import tomli_w
from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    DAEMON_SETTINGS_FILE,
    DEFAULT_COLD_WALLET,
    DEFAULT_DAEMON_DIR,
    DEFAULT_GV_DIR,
    DEFAULT_HOT_WALLET,
    DEFAULT_MIN_PAYOUT,
    DEFAULT_PROCESS_REWARDS,
    DEFAULT_ZMQ_HOST,
    GV_SETTINGS_FILE,
    REMOTE_NODES,
)
from .exceptions import ConfigurationError


logger = structlog.get_logger(__name__)


class Settings(BaseSettings):
    """Process settings with environment-based configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GV_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "GhostVault"
    app_version: str = "0.1.0"
    environment: str = "production"

    # Directories
    gv_home: Path = Path(DEFAULT_GV_DIR)
    daemon_data_dir: Path = Path(DEFAULT_DAEMON_DIR)

    # Internal RPC listener (loopback only)
    cli_host: str = "127.0.0.1"
    cli_port: int = 50051

    # Store
    store_url: Optional[str] = None

    # Remote reference nodes
    remote_nodes: List[str] = Field(default_factory=lambda: list(REMOTE_NODES))
    remote_timeout: float = 10.0
    remote_retry_delay: int = 30  # seconds

    # Node RPC
    node_rpc_timeout: float = 60.0

    # Internal RPC client
    rpc_call_timeout: float = 30.0
    rpc_call_attempts: int = 3
    rpc_backoff_base: float = 1.0
    import_wallet_timeout: float = 60 * 60 * 2

    # Scheduler / monitors
    scheduler_loop_interval: int = 10  # seconds
    chain_check_interval: int = 60 * 5
    chain_check_bad_interval: int = 60 * 2
    bad_chain_alert_threshold: int = 5
    sync_check_interval: int = 60
    sync_check_syncing_interval: int = 3
    online_check_interval: int = 1
    remote_poll_interval: int = 30
    notifier_interval: int = 5

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"  # json or console
    log_file: Optional[str] = None

    # Environment flags read without the GV_ prefix
    docker_running: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("DOCKER_RUNNING")
    )
    bot_token: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("TELOXIDE_TOKEN")
    )
    tg_user: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("GV_TG_USER")
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def is_docker(self) -> bool:
        return self.docker_running is not None

    @property
    def gv_home_path(self) -> Path:
        return self.gv_home.expanduser()

    @property
    def daemon_data_path(self) -> Path:
        return self.daemon_data_dir.expanduser()

    @property
    def settings_file(self) -> Path:
        return self.gv_home_path / GV_SETTINGS_FILE

    @property
    def log_path(self) -> Path:
        return Path(self.log_file) if self.log_file else self.gv_home_path / "logs" / "ghostvault.log"

    @property
    def cli_address(self) -> str:
        return f"{self.cli_host}:{self.cli_port}"

    @property
    def database_url(self) -> str:
        if self.store_url:
            return self.store_url
        return f"sqlite+aiosqlite:///{self.gv_home_path / 'gvdb.sqlite3'}"


# Global settings instance
settings = Settings()


def parse_ghost_conf(path: Path) -> Dict[str, str]:
    """Read a ``key=value`` ghost.conf file. Later keys win, comments skipped."""
    values: Dict[str, str] = {}
    if not path.exists():
        return values

    for raw_line in path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return "true" in str(value).lower()


class GVConfig(BaseModel):
    """Operator configuration snapshot."""

    bot_token: Optional[str] = None
    tg_user: Optional[str] = None
    ext_pub_key: Optional[str] = None
    ext_pub_key_label: Optional[str] = None
    reward_address: Optional[str] = None
    anon_mode: bool = False
    anon_reward_address: Optional[str] = None
    internal_anon: Optional[str] = None
    rpc_host: str = "127.0.0.1"
    rpc_port: int = 51725
    rpc_wallet: str = ""
    rpc_wallet_hot: str = DEFAULT_HOT_WALLET
    rpc_user: str = "user"
    rpc_pass: str = "password"
    cli_address: str = "127.0.0.1:50051"
    gv_home: Path = Path(DEFAULT_GV_DIR)
    daemon_data_dir: Path = Path(DEFAULT_DAEMON_DIR)
    daemon_path: Path = Path("")
    daemon_hash: Optional[str] = None
    min_reward_payout: int = DEFAULT_MIN_PAYOUT
    mnemonic: Optional[str] = None
    reward_interval: int = DEFAULT_PROCESS_REWARDS
    zmq_block_host: str = DEFAULT_ZMQ_HOST
    zmq_tx_host: str = DEFAULT_ZMQ_HOST
    announce_stakes: bool = True
    announce_zaps: bool = True
    announce_rewards: bool = True
    timezone: str = "UTC"

    @field_validator(
        "bot_token", "tg_user", "ext_pub_key", "ext_pub_key_label", "reward_address",
        "anon_reward_address", "internal_anon", "daemon_hash", "mnemonic",
        mode="before",
    )
    @classmethod
    def empty_as_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v:
            return None
        return v

    @property
    def settings_file(self) -> Path:
        return self.gv_home / GV_SETTINGS_FILE

    @property
    def bot_enabled(self) -> bool:
        return self.bot_token is not None and self.tg_user is not None

    @property
    def cold_wallet(self) -> str:
        return self.rpc_wallet or DEFAULT_COLD_WALLET

    @classmethod
    def load(cls, gv_home: Path, daemon_data_dir: Path) -> "GVConfig":
        """Build the config from gv_settings.toml and ghost.conf."""
        toml_path = gv_home / GV_SETTINGS_FILE
        try:
            gv_conf = tomllib.loads(toml_path.read_text()) if toml_path.exists() else {}
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(
                f"Invalid settings file: {toml_path}", {"error": str(e)}
            )

        daemon_conf = parse_ghost_conf(daemon_data_dir / DAEMON_SETTINGS_FILE)

        return cls(
            bot_token=gv_conf.get("TELOXIDE_TOKEN", ""),
            tg_user=gv_conf.get("TELEGRAM_USER", ""),
            ext_pub_key=gv_conf.get("EXT_PUB_KEY", ""),
            ext_pub_key_label=gv_conf.get("EXT_PUB_KEY_LABEL", ""),
            reward_address=gv_conf.get("REWARD_ADDRESS", ""),
            anon_mode=_truthy(gv_conf.get("ANON_MODE", False)),
            anon_reward_address=gv_conf.get("ANON_REWARD_ADDRESS", ""),
            internal_anon=gv_conf.get("INTERNAL_ANON", ""),
            rpc_host=daemon_conf.get("rpcbind", "127.0.0.1"),
            rpc_port=int(daemon_conf.get("rpcport", 51725)),
            rpc_wallet=gv_conf.get("RPC_WALLET", ""),
            rpc_user=daemon_conf.get("rpcuser", "user"),
            rpc_pass=daemon_conf.get("rpcpassword", "password"),
            cli_address=gv_conf.get("CLI_ADDRESS", "127.0.0.1:50051"),
            gv_home=gv_home,
            daemon_data_dir=daemon_data_dir,
            daemon_path=Path(gv_conf.get("DAEMON_PATH", "")),
            daemon_hash=gv_conf.get("DAEMON_HASH", ""),
            min_reward_payout=int(gv_conf.get("MIN_REWARD_PAYOUT", DEFAULT_MIN_PAYOUT)),
            mnemonic=gv_conf.get("MNEMONIC", ""),
            reward_interval=int(gv_conf.get("REWARD_INTERVAL", DEFAULT_PROCESS_REWARDS)),
            zmq_block_host=daemon_conf.get("zmqpubhashblock", DEFAULT_ZMQ_HOST),
            zmq_tx_host=daemon_conf.get("zmqpubhashwtx", DEFAULT_ZMQ_HOST),
            announce_stakes=_truthy(gv_conf.get("ANNOUNCE_STAKES", True)),
            announce_zaps=_truthy(gv_conf.get("ANNOUNCE_ZAPS", True)),
            announce_rewards=_truthy(gv_conf.get("ANNOUNCE_REWARDS", True)),
            timezone=gv_conf.get("TIMEZONE", "UTC"),
        )


# Settings-file key -> GVConfig field
TOML_FIELDS: Dict[str, str] = {
    "teloxide_token": "bot_token",
    "telegram_user": "tg_user",
    "rpc_wallet": "rpc_wallet",
    "cli_address": "cli_address",
    "ext_pub_key": "ext_pub_key",
    "ext_pub_key_label": "ext_pub_key_label",
    "reward_address": "reward_address",
    "internal_anon": "internal_anon",
    "reward_interval": "reward_interval",
    "min_reward_payout": "min_reward_payout",
    "mnemonic": "mnemonic",
    "anon_mode": "anon_mode",
    "anon_reward_address": "anon_reward_address",
    "daemon_path": "daemon_path",
    "daemon_hash": "daemon_hash",
    "announce_stakes": "announce_stakes",
    "announce_zaps": "announce_zaps",
    "announce_rewards": "announce_rewards",
    "timezone": "timezone",
}

_BOOL_KEYS = {"anon_mode", "announce_stakes", "announce_zaps", "announce_rewards"}
_INT_KEYS = {"reward_interval", "min_reward_payout"}


class ConfigStore:
    """
    Shared, lock-guarded operator configuration.

    Reads take the reader side of an ``aiorwlock.RWLock``; ``update`` takes the
    writer side, mutates the in-memory copy and rewrites gv_settings.toml
    before releasing the lock.
    """

    def __init__(self, config: GVConfig):
        self._config = config
        self._lock = aiorwlock.RWLock()
        self.logger = logger.bind(service="config_store")

    @classmethod
    def from_settings(cls, app_settings: Settings) -> "ConfigStore":
        return cls(GVConfig.load(app_settings.gv_home_path, app_settings.daemon_data_path))

    async def read(self) -> GVConfig:
        """Return a consistent copy of the current configuration."""
        async with self._lock.reader_lock:
            return self._config.model_copy()

    async def update(self, key: str, value: str) -> GVConfig:
        """Update one setting and persist it immediately."""
        async with self._lock.writer_lock:
            return self._apply(key, value)

    async def update_many(self, values: Dict[str, str]) -> GVConfig:
        """Apply several settings under a single writer lock."""
        async with self._lock.writer_lock:
            for key, value in values.items():
                self._apply(key, value)
            return self._config.model_copy()

    def _apply(self, key: str, value: str) -> GVConfig:
        name = key.lower()
        field_name = TOML_FIELDS.get(name)
        if field_name is None:
            raise ConfigurationError(f"Invalid field name: {key}", {"field": key})

        if name in _BOOL_KEYS:
            typed_value: Any = _truthy(value)
        elif name in _INT_KEYS:
            try:
                typed_value = int(value)
            except (TypeError, ValueError):
                raise ConfigurationError(f"Invalid value for {name}", {"value": value})
        else:
            typed_value = str(value)

        data = self._config.model_dump()
        data[field_name] = typed_value
        self._config = GVConfig.model_validate(data)
        self._persist(name.upper(), typed_value)

        self.logger.info("Configuration updated", field=name)
        return self._config.model_copy()

    def _persist(self, toml_key: str, value: Any) -> None:
        path = self._config.settings_file
        path.parent.mkdir(parents=True, exist_ok=True)
        content: Dict[str, Any] = tomllib.loads(path.read_text()) if path.exists() else {}
        content[toml_key] = value
        path.write_text(tomli_w.dumps(content))
