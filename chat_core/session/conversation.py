"""会话状态机核心模块。

ConversationSession 持有有序的消息历史，负责：
- 接收用户提交，分配消息 id 与投递状态；
- 把 CompletionClient 逐个回调的片段实时拼接为一条助手消息；
- 把交换的成功/失败结果回写到历史中；
- 每次修改后向订阅者发布只读快照。

所有状态修改都发生在同一个逻辑线程上，片段迭代是唯一的挂起点。
同一时间最多只有一个交换在进行中（busy 标志）。
"""

import logging
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from chat_core.domain.exceptions import CredentialRequired, TransportError
from chat_core.domain.models import ChatMessage, Message, Notification, NotificationKind, SessionSnapshot
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import CompletionClient
from chat_core.session.notifier import LoggingNotifier, Notifier


Subscriber = Callable[[SessionSnapshot], None]


class ConversationSession:
    def __init__(self, client: CompletionClient, notifier: Optional[Notifier] = None):
        self._client = client
        self._notifier = notifier or LoggingNotifier()
        self._messages: List[Message] = []
        self._busy = False
        self._subscribers: List[Subscriber] = []
        # 当前交换的标识；clear() 后置空，旧交换的回调据此识别为过期
        self._exchange_id: Optional[str] = None
        self._in_flight_user_id: Optional[str] = None
        self._in_flight_assistant_id: Optional[str] = None

    # ---- 只读状态 ----

    @property
    def client(self) -> CompletionClient:
        return self._client

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def messages(self) -> List[Message]:
        return [m.copy() for m in self._messages]

    @property
    def in_flight_assistant_id(self) -> Optional[str]:
        return self._in_flight_assistant_id

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(messages=tuple(m.copy() for m in self._messages), busy=self._busy)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """注册快照观察者，返回取消订阅的函数。

        观察者抛出的异常会被记录并跳过，不影响其他观察者和进行中的交换。
        """

        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # ---- 操作 ----

    def submit(self, text: str) -> None:
        """提交一条用户消息并同步完成一次交换。

        空白输入或已有交换进行中时什么也不做；客户端未初始化时
        先发出 CredentialRequired 通知再抛出同名异常，历史保持不变。
        网络/远端错误不会抛给调用方，而是记录在用户消息的 status 上。
        """

        if not text or not text.strip():
            return
        if self._busy:
            self._log(logging.WARNING, "Submission ignored while busy", {"exchange_id": self._exchange_id})
            return
        if not self._client.is_ready():
            self._notify("CredentialRequired", "API key required", "Please enter your API key in the settings.")
            raise CredentialRequired(
                code="CREDENTIAL_REQUIRED",
                message="An API key is required before sending messages",
            )

        exchange_id = f"ex-{uuid4().hex}"
        log_ctx: Dict[str, Any] = {"exchange_id": exchange_id}

        user_msg = Message(role="user", content=text, status="pending")
        self._messages.append(user_msg)
        self._exchange_id = exchange_id
        self._in_flight_user_id = user_msg.id
        self._in_flight_assistant_id = None
        self._publish()

        user_msg.status = "sent"
        self._publish()

        self._busy = True
        self._publish()

        context = self.build_context()
        self._log(
            logging.INFO,
            "Exchange started",
            log_ctx,
            user_message_id=user_msg.id,
            context_messages=len(context),
        )
        try:
            result = self._client.exchange(
                text,
                context,
                lambda fragment: self._on_fragment(exchange_id, fragment),
            )
        except TransportError as e:
            self._on_failure(exchange_id, e, log_ctx)
        else:
            self._on_success(exchange_id, result, log_ctx)
        finally:
            self._busy = False
            if self._exchange_id == exchange_id:
                self._exchange_id = None
                self._in_flight_user_id = None
                self._in_flight_assistant_id = None
            self._publish()

    def clear(self) -> None:
        """清空历史。进行中的交换不会被中止，但其后续回调不再生效。"""

        if self._exchange_id is not None:
            self._log(logging.INFO, "Detached in-flight exchange", {"exchange_id": self._exchange_id})
        self._messages = []
        self._exchange_id = None
        self._in_flight_user_id = None
        self._in_flight_assistant_id = None
        self._publish()

    def build_context(self) -> List[ChatMessage]:
        """构造发往上游的上下文：保持历史顺序，只保留 role 与 content。

        当前交换中的消息不计入；新的用户输入由客户端自行追加。
        """

        in_flight = {self._in_flight_user_id, self._in_flight_assistant_id}
        return [
            ChatMessage(role=m.role, content=m.content)
            for m in self._messages
            if m.id not in in_flight
        ]

    # ---- 交换回调 ----

    def _on_fragment(self, exchange_id: str, fragment: str) -> None:
        if exchange_id != self._exchange_id:
            self._log(logging.INFO, "Discarded stale fragment", {"exchange_id": exchange_id})
            return
        if self._in_flight_assistant_id is None:
            assistant_msg = Message(role="assistant", content=fragment)
            self._messages.append(assistant_msg)
            self._in_flight_assistant_id = assistant_msg.id
        else:
            self._get_message(self._in_flight_assistant_id).content += fragment
        self._publish()

    def _on_success(self, exchange_id: str, result: Message, log_ctx: Dict[str, Any]) -> None:
        if exchange_id != self._exchange_id:
            self._log(logging.INFO, "Discarded stale completion", log_ctx)
            return
        if self._in_flight_assistant_id is None:
            # 没有收到任何片段时，以客户端返回的完整消息作为回复
            assistant_msg = Message(role="assistant", content=result.content, id=result.id, created_at=result.created_at)
            self._messages.append(assistant_msg)
            self._in_flight_assistant_id = assistant_msg.id
        self._log(
            logging.INFO,
            "Exchange finished",
            log_ctx,
            assistant_message_id=self._in_flight_assistant_id,
            content_length=len(result.content),
        )

    def _on_failure(self, exchange_id: str, error: TransportError, log_ctx: Dict[str, Any]) -> None:
        self._log(logging.WARNING, "Exchange failed", log_ctx, code=error.code, error=error.message)
        if exchange_id != self._exchange_id:
            return
        if self._in_flight_user_id is not None:
            self._get_message(self._in_flight_user_id).status = "error"
        self._notify("ExchangeFailed", "Something went wrong", error.message or "Failed to send message")

    # ---- 辅助方法 ----

    def _get_message(self, message_id: str) -> Message:
        for m in reversed(self._messages):
            if m.id == message_id:
                return m
        raise KeyError(message_id)

    def _publish(self) -> None:
        snap = self.snapshot()
        for callback in list(self._subscribers):
            # 单个观察者出错不能中断交换
            try:
                callback(snap)
            except Exception:
                logger.exception(
                    "Snapshot subscriber failed",
                    extra={"extra": {"exchange_id": self._exchange_id, "subscriber": repr(callback)}},
                )

    def _notify(self, kind: NotificationKind, title: str, description: str) -> None:
        self._notifier.notify(Notification(kind=kind, title=title, description=description))

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
