"""统一的消息与流式片段数据模型。

本模块定义了 Orchestrator、各 Provider 客户端与存储层之间共享的标准数据结构：

- Message: 一条对话消息（user/assistant/system）。
- Delta: 片段增量的带标签变体（TextDelta / EmptyDelta / MalformedDelta），
  由 Provider 在边界处一次性解码，核心层不再处理松散的 dict。
- ResultFragment: 流式响应中的一个片段，带有序号、结束原因、token 统计与错误。
- GenerationSettings: 一次生成请求的模型参数。

所有 Provider 适配器都必须只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from chat_core.domain.exceptions import BusinessError


# 消息角色类型（与 OpenAI 等厂商的 role 字段对应）
Role = Literal["user", "assistant", "system"]


@dataclass(frozen=True)
class Message:
    """一条对话消息，追加到会话后不可变。"""

    role: Role
    content: str

    def to_payload(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Message":
        return cls(role=data.get("role") or "user", content=data.get("content") or "")


def user_message(content: str) -> Message:
    return Message(role="user", content=content)


class FinishReason(str, Enum):
    """Provider 报告的结束原因（统一为 OpenAI 风格）。"""

    STOP = "stop"
    LENGTH = "length"
    NONE = "none"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "FinishReason":
        if raw == "stop":
            return cls.STOP
        if raw == "length":
            return cls.LENGTH
        return cls.NONE

    @property
    def is_terminal(self) -> bool:
        return self is not FinishReason.NONE


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class EmptyDelta:
    pass


@dataclass(frozen=True)
class MalformedDelta:
    """delta 中存在 content 但无法解析为字符串。"""

    raw: Any


Delta = Union[TextDelta, EmptyDelta, MalformedDelta]
EMPTY_DELTA = EmptyDelta()


def decode_delta(payload: Optional[Dict[str, Any]]) -> Delta:
    """把厂商返回的 delta dict 解码为带标签变体。

    - 缺少 content 或 content 为 null（角色声明、工具调用、结束块）视为 EmptyDelta；
    - content 为字符串时为 TextDelta；
    - 其他类型一律标记为 MalformedDelta，由 Accumulator 拒绝。
    """

    if not payload:
        return EMPTY_DELTA
    content = payload.get("content")
    if content is None:
        return EMPTY_DELTA
    if isinstance(content, str):
        return TextDelta(content)
    return MalformedDelta(raw=content)


@dataclass(frozen=True)
class TokenUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int


@dataclass(frozen=True)
class ResultFragment:
    """流式响应的一个片段。

    - sequence_id: Provider 按发出顺序分配的序号，Orchestrator 观察到的顺序可能不同。
    - delta: 本片段的文本增量。
    - finish_reason: stop/length 表示回答在此结束。
    - usage: 可选的 token 统计。
    - error: 可选的错误；CompletionCancelled 表示主动取消。
    - is_final: 流结束哨兵（例如 OpenAI 的 [DONE]）。
    """

    sequence_id: int
    delta: Delta = EMPTY_DELTA
    finish_reason: FinishReason = FinishReason.NONE
    usage: Optional[TokenUsage] = None
    error: Optional[BusinessError] = None
    is_final: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.is_final or self.finish_reason.is_terminal

    @classmethod
    def text(
        cls,
        sequence_id: int,
        text: str,
        finish_reason: FinishReason = FinishReason.NONE,
        usage: Optional[TokenUsage] = None,
    ) -> "ResultFragment":
        return cls(sequence_id=sequence_id, delta=TextDelta(text), finish_reason=finish_reason, usage=usage)

    @classmethod
    def sentinel(cls, sequence_id: int, finish_reason: FinishReason = FinishReason.NONE) -> "ResultFragment":
        return cls(sequence_id=sequence_id, finish_reason=finish_reason, is_final=True)

    @classmethod
    def failure(cls, sequence_id: int, error: BusinessError) -> "ResultFragment":
        return cls(sequence_id=sequence_id, error=error, is_final=True)


class ProcessingMode(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    ERROR = "error"


@dataclass
class GenerationSettings:
    """一次生成请求的模型参数。

    temperature / top_p 为 None 时不下发，由 Provider 使用自身默认值。
    system_prompt 非空时覆盖配置中的 system_message。
    """

    model: str
    max_tokens: int
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    frequency: float = 0.0
    system_prompt: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerationSettings":
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)
