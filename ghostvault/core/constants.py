"""
Fixed values shared across GhostVault.

Amounts are integer satoshis (1 GHOST = 100_000_000), intervals are seconds.
"""

from typing import FrozenSet, Tuple


VERSION = "0.1.0"

DAEMON_BASE_URL = "https://github.com/ghost-coin/ghost-core/releases/download/"
LATEST_RELEASE_URL = "https://github.com/ghost-coin/ghost-core/releases/latest"
EXPLORER_TX_URL = "https://ghostscan.io/tx/{txid}/"
TELEGRAM_GET_ME_URL = "https://api.telegram.org/bot{token}/getMe"

TMP_PATH = "/tmp/GhostVault"
DEFAULT_GV_DIR = "~/.ghostvault/"
DEFAULT_DAEMON_DIR = "~/.ghost/"
DAEMON_PID_FILE = "ghost.pid"
GV_PID_FILE = "ghostvault.pid"
GV_SETTINGS_FILE = "gv_settings.toml"
DAEMON_SETTINGS_FILE = "ghost.conf"
DEFAULT_COLD_WALLET = "GV_COLD"
DEFAULT_HOT_WALLET = "GV_HOT"
DEFAULT_ZMQ_HOST = "tcp://127.0.0.1:28332"

# Scheduled task intervals
DEFAULT_DAEMON_UPDATE = 60 * 60 * 2
DEFAULT_SELF_UPDATE = 60 * 60 * 2
DEFAULT_PROCESS_REWARDS = 60 * 15

# Amounts (satoshis)
COIN = 100_000_000
DEFAULT_MIN_PAYOUT = 10_000_000
MIN_TX_VALUE = 10_000_000
MAX_TX_FEES = 25_000_000
SEND_FEE_RATE = 0.000075
UNSPENT_BATCH_SIZE = 100

# Reward accounting
AGVR_ACTIVATION_HEIGHT = 591621
DEV_FUND_ADDRESSES: FrozenSet[str] = frozenset({
    "GgtiuDqVxAzg47yW7oSMmophe3tU8qoE1f",
    "GQJ4unJi6hAzd881YM17rEzPNWaWZ4AR3f",
    "Ga7ECMeX8QUJTTvf9VUnYgTQUFxPChDqqU",
    "GQtToV2LnHGhHy4LRVapLDMaukdDgzZZZV",
    "GSo4N8Q4QTHoC2eWnDQkm86Vs1FhcMGE3Y",
})
BLACKLISTED_OUTPUT_TYPES: FrozenSet[str] = frozenset({"data", "anon", "blind"})

# Confirmation thresholds
STAKE_MATURITY = 100
ZAP_MATURITY = 225

# Notifications older than this are dropped by the notifier
NOTIFICATION_TTL = 300

REMOTE_NODES: Tuple[str, ...] = (
    "https://api.tuxprint.com",
    "https://api2.tuxprint.com",
    "https://socket.tuxprint.com",
    "https://socket2.tuxprint.com",
)
