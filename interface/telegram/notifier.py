"""
NOTIFIER - One-way messages about what the daemon did

Notifications are fire-and-forget: a failed send is logged and swallowed so
it can never abort a tick.

Setup:
1. Message @BotFather on Telegram
2. Send /newbot and follow instructions
3. Put the bot token and your chat id in config/credentials.yaml
   (or TELEGRAM_BOT_TOKEN / TELEGRAM_CHAT_ID)
Without credentials, messages go to the log instead.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Protocol

from loguru import logger
from telegram import Bot
from telegram.error import TelegramError

from config.loader import TelegramConfig
from core.clock import utcnow


class AlertLevel(Enum):
    """Alert severity levels."""
    INFO = "ℹ️"
    SUCCESS = "✅"
    WARNING = "⚠️"
    ERROR = "❌"
    CRITICAL = "🚨"


@dataclass
class Alert:
    """An alert to send to the user."""
    level: AlertLevel
    title: str
    message: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    def format(self) -> str:
        """Format alert for Telegram."""
        body = f"\n{self.message}" if self.message else ""
        return f"{self.level.value} *{self.title}*{body}\n_{self.timestamp.strftime('%H:%M:%S')}_"


class Notifier(Protocol):
    async def send(self, text: str) -> bool:
        ...

    async def send_alert(self, alert: Alert) -> bool:
        ...


class LogNotifier:
    """Writes notifications to the log. Used when Telegram is not configured."""

    def __init__(self):
        self.sent: List[str] = []

    async def send(self, text: str) -> bool:
        self.sent.append(text)
        logger.info(f"[notify] {text}")
        return True

    async def send_alert(self, alert: Alert) -> bool:
        return await self.send(alert.format())


class TelegramNotifier:
    """Sends Markdown messages to one chat through the Bot API."""

    def __init__(self, config: TelegramConfig, bot: Optional[Bot] = None):
        self.chat_id = config.chat_id
        self.enabled = config.enabled
        self._bot = bot or Bot(token=config.bot_token)

    async def send(self, text: str) -> bool:
        if not self.enabled:
            return False
        try:
            await self._bot.send_message(
                chat_id=self.chat_id,
                text=text,
                parse_mode="Markdown"
            )
            return True
        except TelegramError as e:
            logger.error(f"Failed to send Telegram message: {e}")
        except OSError as e:
            logger.error(f"Telegram unreachable: {e}")
        return False

    async def send_alert(self, alert: Alert) -> bool:
        return await self.send(alert.format())


def create_notifier(config: Optional[TelegramConfig]) -> Notifier:
    if config is None or not config.enabled:
        return LogNotifier()
    logger.info(f"Telegram notifications enabled for chat {config.chat_id}")
    return TelegramNotifier(config)
