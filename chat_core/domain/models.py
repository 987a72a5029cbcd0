"""统一的对话与结果数据模型。

本模块定义了会话层与 Provider 之间共享的标准数据结构：

- Message: 会话历史中的一条消息（带 id、时间戳与投递状态）。
- ChatMessage: 发往上游的上下文条目，只有 role + content。
- ChatRequest: 发给底层 LLM Provider 的完整请求。
- ChatResult / ChatStreamChunk: 从 Provider 解析后的统一响应结果。
- SessionSnapshot / Notification: 会话对外发布的状态与通知。

Provider 适配器（如 OpenAICompatibleClient）只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Literal, Optional, List, Tuple
from uuid import uuid4


# 消息角色类型（与 OpenAI 兼容接口的 role 字段对应）
Role = Literal["system", "user", "assistant"]

# 仅对用户消息有意义的投递状态
MessageStatus = Literal["pending", "sent", "error"]

NotificationKind = Literal["CredentialRequired", "ExchangeFailed", "CredentialSaved", "CredentialInvalid"]


def new_message_id() -> str:
    return f"m-{uuid4().hex}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Message:
    """会话历史中的一条消息。

    - id: 创建时分配，生命周期内不变。
    - role: 创建后不可变。
    - content: 助手消息在流式构建期间按片段追加；用户消息创建后固定。
    - created_at: 创建时间（UTC）。
    - status: 仅用户消息使用 pending/sent/error；助手消息为 None，
      只要存在于历史中即视为已送达。
    """

    role: Role
    content: str
    id: str = field(default_factory=new_message_id)
    created_at: datetime = field(default_factory=utcnow)
    status: Optional[MessageStatus] = None

    def copy(self) -> "Message":
        return replace(self)


@dataclass
class ChatMessage:
    """发往上游的一条上下文消息，不包含 id/时间戳/状态。"""

    role: Role
    content: str

    def to_payload(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass
class ChatRequest:
    """一次完整的聊天请求。

    在交换开始时由客户端根据当前配置生成快照，
    之后对 setter 的调用只影响下一次交换。
    """

    model: str
    messages: List[ChatMessage]
    temperature: float = 0.7
    top_p: float = 1.0
    max_tokens: Optional[int] = None


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatChoice:
    """单个候选回答（目前只用 index=0 的一条）。"""

    index: int
    message: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatResult:
    """一次非流式调用的最终结果。"""

    provider: str
    model: str
    choices: List[ChatChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None


@dataclass
class ChatStreamChoice:
    """流式返回中的单个候选增量。"""

    index: int
    delta: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatStreamChunk:
    """流式对话的增量结果，结构与 ChatResult 类似。

    每条 SSE data 行解析为一个 chunk，choice.delta 代表本次增量内容。
    """

    provider: str
    model: str
    choices: List[ChatStreamChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None


@dataclass(frozen=True)
class SessionSnapshot:
    """会话在某一时刻的只读快照，观察者据此重新渲染。"""

    messages: Tuple[Message, ...]
    busy: bool


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    title: str
    description: str
