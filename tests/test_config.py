"""
Test operator configuration loading and persistence.
"""

import tomllib

import pytest

from ghostvault.core.config import ConfigStore, GVConfig, Settings, parse_ghost_conf
from ghostvault.core.exceptions import ConfigurationError


def write_ghost_conf(path, body: str) -> None:
    path.mkdir(parents=True, exist_ok=True)
    (path / "ghost.conf").write_text(body)


def test_parse_ghost_conf_later_keys_win(tmp_path):
    """Comments and blank lines are skipped; a repeated key keeps the last value."""
    write_ghost_conf(tmp_path, "# node\nrpcuser=alice\n\nrpcport = 1234\nrpcuser=bob\nnoequals\n")

    assert parse_ghost_conf(tmp_path / "ghost.conf") == {"rpcuser": "bob", "rpcport": "1234"}
    assert parse_ghost_conf(tmp_path / "missing.conf") == {}


def test_load_merges_settings_and_node_conf(tmp_path):
    """Operator settings come from TOML, node credentials from ghost.conf."""
    daemon_dir = tmp_path / "ghost"
    write_ghost_conf(
        daemon_dir,
        "rpcuser=ghost\nrpcpassword=secret\nrpcport=51999\n"
        "zmqpubhashblock=tcp://127.0.0.1:29000\n",
    )
    (tmp_path / "gv_settings.toml").write_text(
        'RPC_WALLET = "GV_COLD"\nTELOXIDE_TOKEN = ""\nMIN_REWARD_PAYOUT = 25000000\n'
        'ANON_MODE = true\nTIMEZONE = "Europe/Berlin"\n'
    )

    conf = GVConfig.load(tmp_path, daemon_dir)

    assert conf.rpc_wallet == "GV_COLD"
    assert conf.bot_token is None
    assert conf.bot_enabled is False
    assert conf.min_reward_payout == 25_000_000
    assert conf.anon_mode is True
    assert conf.timezone == "Europe/Berlin"
    assert conf.rpc_user == "ghost"
    assert conf.rpc_pass == "secret"
    assert conf.rpc_port == 51999
    assert conf.zmq_block_host == "tcp://127.0.0.1:29000"
    assert conf.zmq_tx_host == "tcp://127.0.0.1:28332"


def test_load_reads_quoted_booleans(tmp_path):
    """Hand-edited flags written as strings keep their meaning."""
    (tmp_path / "gv_settings.toml").write_text(
        'ANON_MODE = "false"\nANNOUNCE_STAKES = "False"\nANNOUNCE_ZAPS = "true"\n'
        "ANNOUNCE_REWARDS = false\n"
    )

    conf = GVConfig.load(tmp_path, tmp_path / "ghost")

    assert conf.anon_mode is False
    assert conf.announce_stakes is False
    assert conf.announce_zaps is True
    assert conf.announce_rewards is False


def test_load_rejects_broken_toml(tmp_path):
    """A corrupt settings file is a configuration error."""
    (tmp_path / "gv_settings.toml").write_text("RPC_WALLET = \n")

    with pytest.raises(ConfigurationError):
        GVConfig.load(tmp_path, tmp_path / "ghost")


@pytest.mark.asyncio
async def test_update_persists_to_settings_file(config, tmp_path):
    """Updates change the live config and are written to disk immediately."""
    await config.update("REWARD_INTERVAL", "3600")
    await config.update("anon_mode", "true")
    updated = await config.update("REWARD_ADDRESS", "GRewardAddr")

    assert updated.reward_interval == 3600
    assert updated.anon_mode is True
    assert updated.reward_address == "GRewardAddr"

    on_disk = tomllib.loads((tmp_path / "gv_settings.toml").read_text())
    assert on_disk["REWARD_INTERVAL"] == 3600
    assert on_disk["ANON_MODE"] is True
    assert on_disk["REWARD_ADDRESS"] == "GRewardAddr"

    reloaded = GVConfig.load(tmp_path, tmp_path / "ghost")
    assert reloaded.reward_interval == 3600
    assert reloaded.reward_address == "GRewardAddr"


@pytest.mark.asyncio
async def test_update_many_enables_bot(config):
    """Both bot credentials set means the bot is enabled."""
    conf = await config.update_many({"TELOXIDE_TOKEN": "1:abc", "TELEGRAM_USER": "99"})

    assert conf.bot_enabled is True
    assert (await config.read()).tg_user == "99"


@pytest.mark.asyncio
async def test_update_rejects_unknown_field(config):
    """Only known settings can be written."""
    with pytest.raises(ConfigurationError):
        await config.update("NOT_A_SETTING", "x")


@pytest.mark.asyncio
async def test_update_rejects_non_numeric_interval(config):
    """Integer settings must parse as integers."""
    with pytest.raises(ConfigurationError):
        await config.update("MIN_REWARD_PAYOUT", "lots")


@pytest.mark.asyncio
async def test_read_returns_copy(config):
    """Mutating a read copy does not change the shared config."""
    conf = await config.read()
    conf.rpc_wallet = "other"

    assert (await config.read()).rpc_wallet == "GV_COLD"


def test_settings_paths(tmp_path):
    """Derived paths follow the home directory."""
    app_settings = Settings(gv_home=tmp_path, cli_port=50100)

    assert app_settings.settings_file == tmp_path / "gv_settings.toml"
    assert app_settings.cli_address == "127.0.0.1:50100"
    assert app_settings.database_url.endswith("gvdb.sqlite3")


def test_settings_rejects_bad_log_level():
    """Log levels are validated."""
    with pytest.raises(ValueError):
        Settings(log_level="LOUD")


def test_config_store_from_settings(tmp_path):
    """ConfigStore can be built straight from process settings."""
    store = ConfigStore.from_settings(Settings(gv_home=tmp_path, daemon_data_dir=tmp_path / "ghost"))
    assert store._config.gv_home == tmp_path
