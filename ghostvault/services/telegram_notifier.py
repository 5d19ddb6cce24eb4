"""
Telegram notifier.

Drains the outbound notification queue every few seconds and delivers each
entry to the operator's chat with aiogram.
"""

import asyncio
import time
from typing import List, Optional

import aiohttp
import structlog
from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramAPIError, TelegramNetworkError
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup
from aiogram.utils.text_decorations import html_decoration

from ..core.config import ConfigStore, GVConfig, settings
from ..core.constants import NOTIFICATION_TTL, TELEGRAM_GET_ME_URL
from ..core.store import Store
from ..models.records import MessageType, OutboundNotification


logger = structlog.get_logger(__name__)


async def validate_bot_token(token: str) -> bool:
    """Ask Telegram's getMe whether ``token`` belongs to a live bot."""
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as session:
            async with session.get(TELEGRAM_GET_ME_URL.format(token=token)) as response:
                if response.status != 200:
                    return False
                data = await response.json(content_type=None)
                return bool(data.get("ok"))
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.warning("Bot token check failed", error=str(e))
        return False


def make_link_buttons(links: List[str], label: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[[InlineKeyboardButton(text=label, url=link)] for link in links]
    )


def render_message(notification: OutboundNotification) -> str:
    """Header, optional preformatted block, optional body."""
    message = f"{html_decoration.quote(notification.header)}\n\n"
    if notification.code_block:
        message += f"<pre>{html_decoration.quote(notification.code_block)}</pre>\n"
    if notification.msg:
        message += f"{html_decoration.quote(notification.msg)}\n"
    return message


def is_announced(notification: OutboundNotification, conf: GVConfig) -> bool:
    if notification.msg_type == MessageType.REWARDS:
        return conf.announce_rewards
    if notification.msg_type == MessageType.STAKE:
        return conf.announce_stakes
    if notification.msg_type == MessageType.ZAP:
        return conf.announce_zaps
    return True


class TelegramNotifier:
    """Background consumer of the ``tg_bot_queue`` tree."""

    def __init__(self, store: Store, config: ConfigStore, bot: Optional[Bot] = None):
        self.store = store
        self.config = config
        self.bot = bot
        self._bot_token: Optional[str] = None
        self.is_running = False
        self.logger = logger.bind(service="telegram_notifier")

    def _get_bot(self, token: str) -> Bot:
        if self.bot is None or (self._bot_token is not None and self._bot_token != token):
            self.bot = Bot(
                token=token,
                default=DefaultBotProperties(parse_mode=ParseMode.HTML, link_preview_is_disabled=True),
            )
        self._bot_token = token
        return self.bot

    async def process_queue(self, now: Optional[int] = None) -> int:
        """Deliver or discard every queued notification. Returns messages sent."""
        conf = await self.config.read()
        if not conf.bot_enabled:
            return 0

        bot = self._get_bot(conf.bot_token)
        chat_id = conf.tg_user
        now = now if now is not None else int(time.time())
        sent = 0

        for key, notification in await self.store.notifications():
            if now - notification.timestamp > NOTIFICATION_TTL:
                await self.store.remove_notification(key)
                continue

            if not is_announced(notification, conf):
                await self.store.remove_notification(key)
                continue

            if notification.msg_type == MessageType.STAKE_REMOVAL:
                if notification.msg_to_delete is not None:
                    try:
                        await bot.delete_message(chat_id=chat_id, message_id=notification.msg_to_delete)
                    except TelegramAPIError as e:
                        self.logger.warning("Failed to delete message", error=str(e))
                await self.store.remove_notification(key)
                continue

            markup = make_link_buttons(notification.url, "View on Ghostscan") if notification.url else None
            try:
                message = await bot.send_message(
                    chat_id=chat_id,
                    text=render_message(notification),
                    reply_markup=markup,
                )
            except (TelegramAPIError, TelegramNetworkError) as e:
                self.logger.warning("Error sending message", key=key, error=str(e))
                continue

            if notification.msg_type == MessageType.STAKE and notification.reward_txid:
                status = await self.store.get_stake_status(notification.reward_txid)
                if status is not None:
                    status.tg_msg_id = message.message_id
                    await self.store.set_stake_status(status)

            await self.store.remove_notification(key)
            sent += 1

        return sent

    async def run(self) -> None:
        """Poll the queue until stopped, once the server reports ready."""
        self.is_running = True
        while self.is_running and not (await self.store.get_readiness()).ready:
            await asyncio.sleep(1)

        self.logger.info("Notifier started")
        while self.is_running:
            try:
                await self.process_queue()
            except Exception as e:
                self.logger.error("Notifier pass failed", error=str(e))
            await asyncio.sleep(settings.notifier_interval)

    async def stop(self) -> None:
        self.is_running = False
        if self.bot is not None:
            await self.bot.session.close()
