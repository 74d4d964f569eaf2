from interface.telegram.notifier import (
    Alert,
    AlertLevel,
    LogNotifier,
    Notifier,
    TelegramNotifier,
    create_notifier,
)

__all__ = [
    "Alert",
    "AlertLevel",
    "LogNotifier",
    "Notifier",
    "TelegramNotifier",
    "create_notifier",
]
