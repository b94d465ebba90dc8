"""Chat Core 顶层包。

该包提供聊天客户端的流式补全编排核心，
包括配置加载、领域模型、Provider 适配、片段重组与累加、
处理状态机以及会话/设置的持久化存储等能力。
"""

from chat_core.engine.orchestrator import Orchestrator
from chat_core.providers import create_provider

__all__ = ["Orchestrator", "create_provider"]
