"""用户可见通知的出口。

会话层只依赖 Notifier 协议；UI 可以接入自己的 toast 实现，
默认实现把通知写入日志。
"""

import logging
from typing import List, Protocol

from chat_core.domain.models import Notification
from chat_core.infrastructure.logging.logger import logger


# 需要用户处理的通知使用 warning 级别
_DESTRUCTIVE_KINDS = {"CredentialRequired", "ExchangeFailed", "CredentialInvalid"}


class Notifier(Protocol):
    def notify(self, notification: Notification) -> None:
        ...


class LoggingNotifier:
    def notify(self, notification: Notification) -> None:
        level = logging.WARNING if notification.kind in _DESTRUCTIVE_KINDS else logging.INFO
        logger.log(
            level,
            notification.title,
            extra={"extra": {"kind": notification.kind, "description": notification.description}},
        )


class CollectingNotifier(LoggingNotifier):
    """在记录日志的同时按顺序收集通知，供 UI 轮询或测试断言使用。"""

    def __init__(self):
        self.notifications: List[Notification] = []

    def notify(self, notification: Notification) -> None:
        super().notify(notification)
        self.notifications.append(notification)

    def drain(self) -> List[Notification]:
        items, self.notifications = self.notifications, []
        return items

    def kinds(self) -> List[str]:
        return [n.kind for n in self.notifications]
