"""推理客户端抽象接口。

Orchestrator 不直接依赖具体厂商的 HTTP 接口，而是依赖此协议：

- 每个厂商实现一个 InferenceClient（如 OpenAiClient、GeminiClient）。
- request_completion 在独立的 asyncio 任务中运行，只通过 FragmentChannel
  与 Orchestrator 通信：按发出顺序从 sequence_origin 起分配序号，
  每次请求恰好给出一个终止信号（结束哨兵、错误片段或通道关闭）。
- 观察到 RequestScope 被取消时，最后发出一个携带 CompletionCancelled 的片段。

这样可以在不改 Orchestrator 代码的前提下接入更多厂商。
"""

from typing import List, Optional, Protocol, Sequence

from chat_core.domain.exceptions import ApiError, BusinessError, MalformedFragmentError, RateLimitError
from chat_core.domain.models import GenerationSettings, Message, ResultFragment
from chat_core.domain.streaming import FragmentChannel, RequestScope


class InferenceClient(Protocol):
    """推理客户端协议。

    - name: Provider 名称，用于日志。
    - sequence_origin: 首个片段的序号（0 或 1）。
    """

    name: str
    sequence_origin: int

    async def request_completion(
        self,
        scope: RequestScope,
        messages: Sequence[Message],
        settings: GenerationSettings,
        channel: FragmentChannel,
    ) -> None:
        ...

    async def list_models(self) -> List[str]:
        """返回可用于对话的模型 ID 列表，失败时抛出 BusinessError。"""

        ...


def http_error(provider: str, status_code: int, body: str) -> BusinessError:
    """把非 2xx 状态码转换为统一异常：429 为限流，其余为 ApiError。"""

    if status_code == 429:
        return RateLimitError(code="RATE_LIMIT", message=f"{provider} rate limit", http_status=429)
    return ApiError(code="API_ERROR", message=body, http_status=status_code, provider=provider)


def sse_data(line: str) -> Optional[str]:
    """取出 SSE 行中 data: 之后的内容；其他行（空行、注释、event:）返回 None。"""

    if not line or not line.startswith("data:"):
        return None
    data = line[5:].strip()
    return data or None


def malformed(seq: int, message: str) -> ResultFragment:
    """无法按预期结构解析的片段统一转换为 MalformedFragmentError 终止片段。"""

    return ResultFragment.failure(seq, MalformedFragmentError(code="MALFORMED_FRAGMENT", message=message))
