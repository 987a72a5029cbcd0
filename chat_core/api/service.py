"""对外 API 服务模块。

提供简化的函数接口供上层 UI 调用，并负责组装默认会话：
从本地存储读取已保存的 API 密钥，初始化客户端后注入 ConversationSession。
"""

from dataclasses import asdict
from typing import Any, Dict, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.exceptions import BusinessError, CredentialRequired
from chat_core.domain.models import Message, Notification
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.credential_store import CredentialStore
from chat_core.providers import OpenAICompatibleClient, create_client
from chat_core.session.conversation import ConversationSession
from chat_core.session.notifier import CollectingNotifier


_store: Optional[CredentialStore] = None
_client: Optional[OpenAICompatibleClient] = None
_notifier: Optional[CollectingNotifier] = None
_session: Optional[ConversationSession] = None


def get_default_session() -> ConversationSession:
    """获取默认会话实例（惰性创建）。"""
    global _store, _client, _notifier, _session
    if _store is None:
        _store = CredentialStore(root=settings.storage_root)
    if _session is None:
        _client = create_client()
        credential = _store.load() or settings.openai_api_key
        if credential:
            _client.initialize(credential)
        _notifier = CollectingNotifier()
        _session = ConversationSession(_client, notifier=_notifier)
    return _session


def reset_default_session() -> None:
    """丢弃默认会话并释放底层连接，下次调用时重新组装。"""
    global _store, _client, _notifier, _session
    if _client is not None:
        _client.close()
    _store = None
    _client = None
    _notifier = None
    _session = None


def set_api_key(key: str) -> bool:
    """初始化客户端并持久化 API 密钥。

    Returns:
        保存成功返回 True；密钥无效时发出 CredentialInvalid 通知并返回 False。
    """
    get_default_session()
    try:
        _client.initialize(key)
        _store.save(key.strip())
    except BusinessError as e:
        logger.warning(f"Saving API key failed: {e.message}", extra={"extra": {"code": e.code}})
        _notifier.notify(
            Notification(
                kind="CredentialInvalid",
                title="Invalid API key",
                description="Please check your API key and try again.",
            )
        )
        return False
    _notifier.notify(
        Notification(
            kind="CredentialSaved",
            title="API key saved",
            description="Your API key has been saved successfully.",
        )
    )
    return True


def has_api_key() -> bool:
    return get_default_session().client.is_ready()


def send_message(text: str) -> Dict[str, Any]:
    """提交一条消息并返回交换结束后的会话状态。

    Raises:
        CredentialRequired: 尚未配置 API 密钥。
    """
    session = get_default_session()
    try:
        session.submit(text)
    except CredentialRequired as e:
        logger.error(f"Chat failed: {e}", extra={"extra": {"code": e.code}})
        raise
    return get_state()


def clear_messages() -> Dict[str, Any]:
    get_default_session().clear()
    return get_state()


def get_state() -> Dict[str, Any]:
    """返回当前会话状态：消息列表、busy 标志与是否已配置密钥。"""
    session = get_default_session()
    snap = session.snapshot()
    return {
        "messages": [_message_to_dict(m) for m in snap.messages],
        "busy": snap.busy,
        "has_api_key": session.client.is_ready(),
    }


def drain_notifications() -> List[Dict[str, str]]:
    get_default_session()
    return [asdict(n) for n in _notifier.drain()]


def _message_to_dict(m: Message) -> Dict[str, Any]:
    return {
        "id": m.id,
        "role": m.role,
        "content": m.content,
        "created_at": m.created_at.isoformat(),
        "status": m.status,
    }
