"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
便于在会话层或 UI 层做统一捕获与用户提示。

- CredentialRequired / InvalidParameter: 调用方可修复的配置问题，同步抛出。
- NotInitialized: 内部前置条件被破坏（编程错误）。
- TransportError 及其子类: 网络/远端失败，由会话层捕获并转换为消息状态。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "NETWORK_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、exchange_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class CredentialRequired(BusinessError):
    """尚未配置 API 密钥，用户需要先在设置中填写。"""


class NotInitialized(BusinessError):
    """在 initialize() 之前调用了对话方法。"""


class InvalidParameter(BusinessError):
    """参数或配置校验失败，不会产生任何状态修改。"""


class TransportError(BusinessError):
    """一次对话交换中的网络/远端错误的基类。"""


class NetworkError(TransportError):
    """网络层错误，例如连接失败、读取中断等。"""


class ApiError(TransportError):
    """远端 API 返回非 2xx/429 错误，或在流中下发 error 对象。"""


class RateLimitError(TransportError):
    """Provider 限流错误，本层不做重试/退避。"""


class MalformedResponseError(TransportError):
    """响应体无法解析为预期的 JSON 结构。"""
