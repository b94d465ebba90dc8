"""对外 API 服务模块。

提供简化的函数接口供上层应用（命令行、TUI 等）调用。
"""

from typing import Any, Dict, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.conversation import SessionStore
from chat_core.domain.exceptions import BusinessError
from chat_core.engine.events import OrchestratorEvent
from chat_core.engine.orchestrator import Orchestrator
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonSessionStore
from chat_core.infrastructure.storage.settings_store import JsonSettingsStore
from chat_core.providers import create_provider


_store: Optional[SessionStore] = None
_orchestrator: Optional[Orchestrator] = None


async def get_default_orchestrator() -> Orchestrator:
    """获取默认的 Orchestrator 实例（单例），首次调用时加载设置与活跃会话。"""
    global _store, _orchestrator
    if _store is None:
        _store = JsonSessionStore(root=settings.storage_root)
    if _orchestrator is None:
        orchestrator = Orchestrator(
            store=_store,
            provider_client=create_provider(),
            settings_store=JsonSettingsStore(root=settings.storage_root),
        )
        errors: List[BusinessError] = []

        def on_event(event: OrchestratorEvent) -> None:
            if event.kind == "error" and event.error is not None:
                errors.append(event.error)

        unsubscribe = orchestrator.subscribe(on_event)
        try:
            ok = await orchestrator.initialize()
        finally:
            unsubscribe()
        if not ok:
            raise errors[0]
        _orchestrator = orchestrator
    return _orchestrator


async def run_chat(prompt: str, session_id: Optional[str] = None) -> Dict[str, Any]:
    """发送一轮对话并等待完整回答。

    Args:
        prompt: 用户输入内容
        session_id: 会话ID（可选，不提供则使用当前活跃会话）

    Returns:
        包含会话ID、助手消息和累计 token 统计的字典

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    errors: List[BusinessError] = []

    def on_event(event: OrchestratorEvent) -> None:
        if event.kind == "error" and event.error is not None:
            errors.append(event.error)

    try:
        orchestrator = await get_default_orchestrator()
        if session_id and (orchestrator.session is None or orchestrator.session.id != session_id):
            orchestrator.switch_session(session_id)
        unsubscribe = orchestrator.subscribe(on_event)
        try:
            reply = await orchestrator.submit(prompt)
        finally:
            unsubscribe()
        if errors:
            raise errors[0]

        session = orchestrator.session
        return {
            "session_id": session.id,
            "assistant_message": {
                "role": reply.role,
                "content": reply.content,
            }
            if reply
            else None,
            "usage": {
                "prompt_tokens": session.prompt_token_count,
                "completion_tokens": session.completion_token_count,
            },
        }
    except Exception as e:
        logger.error(f"Chat failed: {e}", extra={"extra": {
            "session_id": session_id,
            "error": str(e),
        }})
        raise


async def list_sessions() -> List[Dict[str, Any]]:
    """列出所有会话。

    Returns:
        会话列表，每项包含 id, name, created_at 与 token 统计
    """
    orchestrator = await get_default_orchestrator()
    return [
        {
            "id": s.id,
            "name": s.name,
            "created_at": s.created_at.isoformat(),
            "message_count": len(s.messages),
            "prompt_tokens": s.prompt_token_count,
            "completion_tokens": s.completion_token_count,
        }
        for s in orchestrator.list_sessions()
    ]


async def get_session_messages(session_id: str) -> List[Dict[str, str]]:
    """获取会话的所有消息。"""
    await get_default_orchestrator()
    return [m.to_payload() for m in _store.get_session(session_id).messages]


def reset_default_orchestrator() -> None:
    """丢弃单例（测试或切换配置后使用）。"""
    global _store, _orchestrator
    _store = None
    _orchestrator = None
