"""OpenAI 兼容 Provider 适配器。

接口风格与 OpenAI/Kimi/GLM 一致，均使用 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>
- 流式: stream=true 时响应为 SSE，每行 `data: {...}`，以 `data: [DONE]` 结束。

本模块负责：

1. 持有连接配置（凭据、模型、采样参数、最大输出长度、端点地址）。
2. 将上下文 + 新的用户输入转换为请求 JSON。
3. 逐行读取 SSE 流，把每个 delta 的文本作为片段同步交给回调。
4. 把网络/HTTP/解析错误统一包装为 TransportError 的子类。
"""

import json
import logging
from typing import Any, Dict, Iterator, List, Optional, Sequence

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import (
    ApiError,
    InvalidParameter,
    MalformedResponseError,
    NetworkError,
    NotInitialized,
    RateLimitError,
)
from chat_core.domain.models import (
    ChatChoice,
    ChatMessage,
    ChatRequest,
    ChatResult,
    ChatStreamChoice,
    ChatStreamChunk,
    ChatUsage,
    Message,
)
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import FragmentCallback
from chat_core.providers.registry import OPENAI_CONFIG, ProviderConfig


_SSE_IGNORED_FIELDS = ("event:", "id:", "retry:")


class OpenAICompatibleClient:
    """OpenAI 兼容端点的 CompletionClient 实现。

    - initialize 之后才能发起交换，否则抛出 NotInitialized。
    - setter 校验失败时抛出 InvalidParameter，且不修改已有配置。
    - 配置在每次交换开始时快照，修改只影响下一次交换。
    """

    def __init__(self, provider: ProviderConfig = OPENAI_CONFIG, cfg=settings):
        self._settings = cfg
        self._provider = provider
        self.name = provider.name
        self._base_url = getattr(cfg, "base_url", None) or provider.base_url
        self._model = getattr(cfg, "default_model", None) or provider.default_model
        self._temperature = getattr(cfg, "temperature", 0.7)
        self._top_p = getattr(cfg, "top_p", 1.0)
        self._max_tokens = getattr(cfg, "max_tokens", 1000)
        self._timeout = getattr(cfg, "http_timeout", None)
        self._credential: Optional[str] = None
        self._transport: Optional[httpx.Client] = None

    # ---- 生命周期 ----

    def initialize(self, credential: str) -> None:
        key = (credential or "").strip()
        if not key:
            raise InvalidParameter(code="INVALID_PARAMETER", message="API key must not be empty")
        if self._transport is not None:
            self._transport.close()
        self._transport = httpx.Client(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
            },
            timeout=self._timeout,
            trust_env=False,
        )
        self._credential = key
        self._log(logging.INFO, "Completion client initialized", base_url=self._base_url)

    def is_ready(self) -> bool:
        return self._credential is not None and self._transport is not None

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
        self._transport = None
        self._credential = None

    # ---- 配置 ----

    @property
    def model(self) -> str:
        return self._model

    @property
    def temperature(self) -> float:
        return self._temperature

    @property
    def top_p(self) -> float:
        return self._top_p

    @property
    def max_output_length(self) -> int:
        return self._max_tokens

    @property
    def base_url(self) -> str:
        return self._base_url

    def set_model(self, model: str) -> None:
        if not isinstance(model, str) or not model.strip():
            raise InvalidParameter(code="INVALID_PARAMETER", message="Model must be a non-empty string")
        self._model = model.strip()
        self._log(logging.INFO, "Model changed", model=self._model)

    def set_temperature(self, temperature: float) -> None:
        if not self._is_unit_interval(temperature):
            raise InvalidParameter(code="INVALID_PARAMETER", message="Temperature must be between 0 and 1")
        self._temperature = float(temperature)

    def set_top_p(self, top_p: float) -> None:
        if not self._is_unit_interval(top_p):
            raise InvalidParameter(code="INVALID_PARAMETER", message="top_p must be between 0 and 1")
        self._top_p = float(top_p)

    def set_max_output_length(self, max_tokens: int) -> None:
        if isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens < 1:
            raise InvalidParameter(code="INVALID_PARAMETER", message="Max tokens must be at least 1")
        self._max_tokens = max_tokens

    # ---- 流式 ----

    def stream(self, user_utterance: str, prior_context: Sequence[ChatMessage]) -> Iterator[str]:
        """返回按到达顺序产出文本片段的惰性迭代器。

        就绪检查与配置快照在调用时立即完成；网络请求在第一次迭代时才发出，
        消费方不取下一个片段之前不会继续读取响应。
        """

        self._require_ready()
        req = self._build_request(user_utterance, prior_context)
        return self._iter_fragments(req)

    def exchange(
        self,
        user_utterance: str,
        prior_context: Sequence[ChatMessage],
        on_fragment: FragmentCallback,
    ) -> Message:
        pieces: List[str] = []
        for fragment in self.stream(user_utterance, prior_context):
            pieces.append(fragment)
            on_fragment(fragment)
        message = Message(role="assistant", content="".join(pieces))
        self._log(
            logging.INFO,
            "Exchange completed",
            message_id=message.id,
            fragments=len(pieces),
            content_length=len(message.content),
        )
        return message

    # ---- 非流式 ----

    def complete(self, user_utterance: str, prior_context: Sequence[ChatMessage]) -> Message:
        """执行一次非流式调用，直接返回完整的助手消息。"""

        self._require_ready()
        req = self._build_request(user_utterance, prior_context)
        payload = self._build_payload(req, stream=False)
        try:
            resp = self._transport.post("/chat/completions", json=payload)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        self._raise_for_status(resp)
        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError(code="MALFORMED_RESPONSE", message=f"Invalid JSON response: {e}")
        if not isinstance(data, dict):
            raise MalformedResponseError(code="MALFORMED_RESPONSE", message="Response body is not an object")
        result = self._parse_response(data, req)
        if not result.choices:
            raise MalformedResponseError(code="MALFORMED_RESPONSE", message="Response contained no choices")
        if result.usage:
            self._log(logging.INFO, "Token usage", **self._usage_fields(result.usage))
        return Message(role="assistant", content=result.choices[0].message.content)

    # ---- 辅助方法 ----

    def _require_ready(self) -> None:
        if not self.is_ready():
            raise NotInitialized(
                code="NOT_INITIALIZED",
                message="Completion client is not initialized. Please provide an API key.",
            )

    def _build_request(self, user_utterance: str, prior_context: Sequence[ChatMessage]) -> ChatRequest:
        messages = [ChatMessage(role=m.role, content=m.content) for m in prior_context]
        messages.append(ChatMessage(role="user", content=user_utterance))
        return ChatRequest(
            model=self._model,
            messages=messages,
            temperature=self._temperature,
            top_p=self._top_p,
            max_tokens=self._max_tokens,
        )

    def _build_payload(self, req: ChatRequest, stream: bool) -> dict:
        model_cfg = self._provider.model_config(req.model)
        return {
            "model": model_cfg.provider_model,
            "messages": [m.to_payload() for m in req.messages],
            "temperature": req.temperature,
            "top_p": req.top_p,
            "max_tokens": req.max_tokens if req.max_tokens is not None else model_cfg.max_tokens,
            "stream": stream,
        }

    def _iter_fragments(self, req: ChatRequest) -> Iterator[str]:
        for chunk in self._stream_chunks(req):
            if chunk.usage:
                self._log(logging.INFO, "Token usage", **self._usage_fields(chunk.usage))
            if not chunk.choices:
                continue
            yield chunk.choices[0].delta.content

    def _stream_chunks(self, req: ChatRequest) -> Iterator[ChatStreamChunk]:
        payload = self._build_payload(req, stream=True)
        self._log(
            logging.INFO,
            "Calling provider (stream)",
            model=payload["model"],
            message_count=len(req.messages),
        )
        try:
            with self._transport.stream("POST", "/chat/completions", json=payload) as resp:
                self._raise_for_status(resp)
                for line in resp.iter_lines():
                    data_str = self._sse_data(line)
                    if data_str is None:
                        continue
                    if data_str == "[DONE]":
                        return
                    try:
                        payload_chunk = json.loads(data_str)
                    except json.JSONDecodeError as e:
                        raise MalformedResponseError(
                            code="MALFORMED_RESPONSE",
                            message=f"Invalid stream chunk: {e}",
                        )
                    if not isinstance(payload_chunk, dict):
                        raise MalformedResponseError(
                            code="MALFORMED_RESPONSE",
                            message="Stream chunk is not an object",
                        )
                    if payload_chunk.get("error"):
                        raise ApiError(code="API_ERROR", message=self._error_text(payload_chunk))
                    yield self._parse_stream_chunk(payload_chunk, req)
        except (httpx.RequestError, httpx.StreamError) as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    @staticmethod
    def _sse_data(line: str) -> Optional[str]:
        """从一行 SSE 中取出 data 内容；空行、注释和其他字段返回 None。"""

        if not line or line.startswith(":") or line.startswith(_SSE_IGNORED_FIELDS):
            return None
        if line.startswith("data:"):
            data_str = line[5:].strip()
        else:
            data_str = line.strip()
        return data_str or None

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        # 流式响应需要先读完 body 才能访问 text
        resp.read()
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message=f"{self.name} rate limit", http_status=429)
        raise ApiError(code="API_ERROR", message=self._error_text_from_body(resp.text), http_status=resp.status_code)

    @classmethod
    def _error_text_from_body(cls, body: str) -> str:
        try:
            data = json.loads(body)
        except (TypeError, json.JSONDecodeError):
            return body
        if isinstance(data, dict):
            return cls._error_text(data)
        return body

    @staticmethod
    def _error_text(data: Dict[str, Any]) -> str:
        err = data.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err)
        if err:
            return str(err)
        return json.dumps(data, ensure_ascii=False)

    def _parse_response(self, data: dict, req: ChatRequest) -> ChatResult:
        choices: list[ChatChoice] = []
        for i, ch in enumerate(self._expect_list(data.get("choices"), "choices")):
            ch = self._expect_dict(ch, "choice")
            msg = self._expect_dict(ch.get("message"), "message")
            choices.append(
                ChatChoice(index=i, message=self._build_chat_message(msg), finish_reason=ch.get("finish_reason"))
            )
        return ChatResult(
            provider=self.name,
            model=req.model,
            choices=choices,
            usage=self._parse_usage(data.get("usage")),
            raw=data,
        )

    def _parse_stream_chunk(self, data: dict, req: ChatRequest) -> ChatStreamChunk:
        choices: list[ChatStreamChoice] = []
        for i, ch in enumerate(self._expect_list(data.get("choices"), "choices")):
            ch = self._expect_dict(ch, "choice")
            delta_payload = self._expect_dict(ch.get("delta"), "delta")
            choices.append(
                ChatStreamChoice(
                    index=ch.get("index", i),
                    delta=self._build_chat_message(delta_payload),
                    finish_reason=ch.get("finish_reason"),
                )
            )
        return ChatStreamChunk(
            provider=self.name,
            model=req.model,
            choices=choices,
            usage=self._parse_usage(data.get("usage")),
            raw=data,
        )

    @staticmethod
    def _malformed(message: str) -> MalformedResponseError:
        return MalformedResponseError(code="MALFORMED_RESPONSE", message=message)

    @classmethod
    def _expect_list(cls, value: Any, what: str) -> List[Any]:
        """None 视为空列表；其他非列表值都是畸形响应。"""

        if value is None:
            return []
        if not isinstance(value, list):
            raise cls._malformed(f"Expected '{what}' to be a list, got {type(value).__name__}")
        return value

    @classmethod
    def _expect_dict(cls, value: Any, what: str) -> Dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise cls._malformed(f"Expected '{what}' to be an object, got {type(value).__name__}")
        return value

    @classmethod
    def _build_chat_message(cls, payload: Dict[str, Any]) -> ChatMessage:
        content = payload.get("content")
        if content is None:
            content = ""
        elif not isinstance(content, str):
            raise cls._malformed(f"Expected 'content' to be a string, got {type(content).__name__}")
        role = payload.get("role") or "assistant"
        if not isinstance(role, str):
            raise cls._malformed(f"Expected 'role' to be a string, got {type(role).__name__}")
        return ChatMessage(role=role, content=content)

    @classmethod
    def _parse_usage(cls, usage_raw: Any) -> Optional[ChatUsage]:
        if not usage_raw:
            return None
        usage = cls._expect_dict(usage_raw, "usage")
        counts = {}
        for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
            value = usage.get(key) or 0
            if isinstance(value, bool) or not isinstance(value, int):
                raise cls._malformed(f"Expected usage '{key}' to be an integer")
            counts[key] = value
        return ChatUsage(**counts)

    @staticmethod
    def _usage_fields(usage: ChatUsage) -> Dict[str, Any]:
        return {
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "total_tokens": usage.total_tokens,
        }

    @staticmethod
    def _is_unit_interval(value: Any) -> bool:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        return 0.0 <= value <= 1.0

    def _log(self, level: int, message: str, **fields: Any) -> None:
        payload: Dict[str, Any] = {"provider": self.name}
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
