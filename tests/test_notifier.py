"""
Test the Telegram notification queue consumer.
"""

from types import SimpleNamespace

import pytest

from ghostvault.models.records import MessageType, OutboundNotification, PendingStakeStatus
from ghostvault.reconciler.notifications import (
    NotificationQueue,
    new_zap_message,
    rewards_message,
    stake_removed_message,
)
from ghostvault.services.telegram_notifier import TelegramNotifier, is_announced, render_message


NOW = 1_700_000_000


class FakeBot:
    def __init__(self):
        self.sent = []
        self.deleted = []

    async def send_message(self, chat_id, text, reply_markup=None):
        self.sent.append((chat_id, text, reply_markup))
        return SimpleNamespace(message_id=1000 + len(self.sent))

    async def delete_message(self, chat_id, message_id):
        self.deleted.append((chat_id, message_id))
        return True


def test_render_message_escapes_html():
    """Header, code block and body are HTML-escaped."""
    note = OutboundNotification(
        timestamp=NOW,
        header="👻 <Test> 👻",
        code_block="a & b",
        msg="1 < 2",
        msg_type=MessageType.ZAP,
    )

    text = render_message(note)

    assert text.startswith("👻 &lt;Test&gt; 👻\n\n")
    assert "<pre>a &amp; b</pre>" in text
    assert text.endswith("1 &lt; 2\n")


@pytest.mark.asyncio
async def test_announce_flags(config):
    """Disabled announcement types are filtered; status messages always pass."""
    conf = await config.update("ANNOUNCE_ZAPS", "false")

    assert is_announced(new_zap_message("tx", 1.0, timestamp=NOW), conf) is False
    assert is_announced(rewards_message(1.0, ["tx"], "anon", timestamp=NOW), conf) is True
    assert is_announced(stake_removed_message(None, timestamp=NOW), conf) is True


@pytest.mark.asyncio
async def test_queue_ignored_without_bot(store, config):
    """Nothing is queued or sent while the bot is not configured."""
    queue = NotificationQueue(store, config)
    assert await queue.push("tx", new_zap_message("tx", 1.0)) is False

    notifier = TelegramNotifier(store, config, bot=FakeBot())
    assert await notifier.process_queue(now=NOW) == 0


@pytest.mark.asyncio
async def test_push_if_absent(store, bot_config):
    """if_absent keeps the first notification under a key."""
    queue = NotificationQueue(store, bot_config)

    assert await queue.push("tx", new_zap_message("tx", 1.0, timestamp=NOW), if_absent=True) is True
    assert await queue.push("tx", new_zap_message("tx", 2.0, timestamp=NOW), if_absent=True) is False
    assert "1.0 GHOST" in (await store.get_notification("tx")).msg


@pytest.mark.asyncio
async def test_delivers_and_drains_queue(store, bot_config):
    """Fresh notifications are sent with explorer buttons and removed."""
    bot = FakeBot()
    await store.set_notification("tx", new_zap_message("tx", 1.0, timestamp=NOW))

    sent = await TelegramNotifier(store, bot_config, bot=bot).process_queue(now=NOW + 10)

    assert sent == 1
    chat_id, text, markup = bot.sent[0]
    assert chat_id == "42"
    assert "New Zap Detected" in text
    assert markup.inline_keyboard[0][0].url == "https://ghostscan.io/tx/tx/"
    assert await store.notifications() == []


@pytest.mark.asyncio
async def test_stale_notifications_dropped(store, bot_config):
    """Notifications older than five minutes are discarded unsent."""
    bot = FakeBot()
    await store.set_notification("old", new_zap_message("old", 1.0, timestamp=NOW - 301))

    assert await TelegramNotifier(store, bot_config, bot=bot).process_queue(now=NOW) == 0
    assert bot.sent == []
    assert await store.notifications() == []


@pytest.mark.asyncio
async def test_stake_message_id_recorded(store, bot_config):
    """The chat message id of a stake announcement is kept on its pending status."""
    bot = FakeBot()
    await store.set_stake_status(PendingStakeStatus(txid="s1", confirmations=1, timestamp=NOW))
    await store.set_notification("s1", OutboundNotification(
        timestamp=NOW,
        header="👻 New Block Found! 👻",
        code_block="{}",
        msg_type=MessageType.STAKE,
        reward_txid="s1",
    ))

    await TelegramNotifier(store, bot_config, bot=bot).process_queue(now=NOW)

    assert (await store.get_stake_status("s1")).tg_msg_id == 1001


@pytest.mark.asyncio
async def test_stake_removal_deletes_announcement(store, bot_config):
    """A removal notice deletes the earlier chat message instead of posting."""
    bot = FakeBot()
    await store.set_notification("removal", stake_removed_message(555, timestamp=NOW))

    assert await TelegramNotifier(store, bot_config, bot=bot).process_queue(now=NOW) == 0
    assert bot.deleted == [("42", 555)]
    assert bot.sent == []
    assert await store.notifications() == []
