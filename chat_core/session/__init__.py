"""会话层：对话历史的唯一数据源与流式状态机。"""

from chat_core.session.conversation import ConversationSession
from chat_core.session.notifier import CollectingNotifier, LoggingNotifier, Notifier

__all__ = ["ConversationSession", "CollectingNotifier", "LoggingNotifier", "Notifier"]
