"""Orchestrator 产生的通知事件。

事件是"发出即忘"的：监听者同步收到事件，Orchestrator 不等待任何确认，
单个监听者抛出的异常只记录日志，不影响状态机与其他监听者。
"""

from dataclasses import dataclass
from typing import Callable, List, Literal, Optional

from chat_core.domain.conversation import Conversation
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import GenerationSettings, Message
from chat_core.infrastructure.logging.logger import logger


EventKind = Literal[
    "processing_state_changed",
    "error",
    "cancelled",
    "settings_updated",
    "chunk_processed",
    "session_loaded",
]


@dataclass
class OrchestratorEvent:
    """通知事件。

    kind:
        - "processing_state_changed": processing 字段为新的处理状态。
        - "error": message 为用户可读错误，error 为原始异常。
        - "cancelled": 用户取消了本轮生成（已尽力保存部分回答）。
        - "settings_updated": settings 为新的生成参数。
        - "chunk_processed": current_answer 为目前连续可见的回答文本。
        - "session_loaded": session 为新的活跃会话工作副本。
    """

    kind: EventKind
    processing: Optional[bool] = None
    message: Optional[str] = None
    error: Optional[BusinessError] = None
    current_answer: Optional[str] = None
    settings: Optional[GenerationSettings] = None
    session: Optional[Conversation] = None
    reply: Optional[Message] = None


Listener = Callable[[OrchestratorEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """注册监听者，返回取消注册的函数。"""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: OrchestratorEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed", extra={"extra": {"event": event.kind}})
