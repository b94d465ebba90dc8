"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 Orchestrator 边界统一捕获并转换为通知事件。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、session_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误，或在流中报告错误负载时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class MalformedFragmentError(BusinessError):
    """流式片段无法解析为文本（JSON 损坏或 delta 内容类型不对）。"""


class CompletionCancelled(BusinessError):
    """请求被调用方主动取消。

    只有 InferenceClient 在观察到自身 RequestScope 被取消时才会产生该错误，
    Orchestrator 据此走取消路径而不是错误路径。
    """


class RequestTimeoutError(BusinessError):
    """有界超时的操作（启动加载、模型列表）超时。"""


class StoreError(BusinessError):
    """会话/设置存储读写失败。"""
