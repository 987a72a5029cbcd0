"""CompletionClient 抽象接口。

ConversationSession 不直接依赖具体厂商的 HTTP 实现，而是依赖此协议，
测试中可以用任何满足协议的假客户端替换。
"""

from typing import Callable, Protocol, Sequence

from chat_core.domain.models import ChatMessage, Message


FragmentCallback = Callable[[str], None]


class CompletionClient(Protocol):
    """LLM 补全客户端协议。

    实现者需要提供：
    - initialize(credential): 保存凭据并构造底层传输。
    - is_ready(): 是否已成功初始化。
    - exchange(...): 执行一次流式交换，按到达顺序同步回调每个片段，
      返回拼接完成的助手消息；失败时抛出 TransportError。
    """

    def initialize(self, credential: str) -> None:
        ...

    def is_ready(self) -> bool:
        ...

    def exchange(
        self,
        user_utterance: str,
        prior_context: Sequence[ChatMessage],
        on_fragment: FragmentCallback,
    ) -> Message:
        ...
