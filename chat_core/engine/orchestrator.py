"""流式补全编排器。

Orchestrator 是处理状态（idle/processing/error）的唯一所有者，负责：

1. submit: 追加用户消息、打开可取消的 RequestScope、在独立任务中启动推理客户端；
2. 逐个消费通道中的片段，交给 FragmentReassembler 恢复逻辑顺序；
3. 片段携带 token 统计时立即写回存储（与消息是否完成无关）；
4. 收到终止信号且片段连续时，用 Accumulator 生成最终回答并写回会话消息；
5. 区分取消与普通错误：取消时保存已连续到达的部分回答并发出 cancelled 通知，
   其他错误进入 ERROR 状态并丢弃本轮累积内容；
6. 把以上所有结果转换为通知事件，不向上抛出（调用方用法错误除外）。

token 统计与消息列表是两次独立写入，没有事务耦合：两次写入之间崩溃时，
token 统计可能领先于消息历史，这不影响聊天记录本身的正确性。
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, SessionStore, SettingsStore
from chat_core.domain.exceptions import (
    ApiError,
    BusinessError,
    CompletionCancelled,
    MalformedFragmentError,
    RequestTimeoutError,
    StoreError,
    ValidationError,
)
from chat_core.domain.models import (
    GenerationSettings,
    Message,
    ProcessingMode,
    ResultFragment,
    TokenUsage,
    user_message,
)
from chat_core.domain.streaming import FragmentChannel, RequestScope
from chat_core.domain.validators import validate_generation_settings
from chat_core.engine.accumulator import accumulate_text, build_final_message
from chat_core.engine.events import EventBus, Listener, OrchestratorEvent
from chat_core.engine.reassembler import FragmentReassembler
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import InferenceClient


class Orchestrator:
    def __init__(
        self,
        store: SessionStore,
        provider_client: InferenceClient,
        settings_store: Optional[SettingsStore] = None,
        cfg=settings,
    ):
        self._store = store
        self._client = provider_client
        self._settings_store = settings_store
        self._cfg = cfg
        self._events = EventBus()

        self._mode = ProcessingMode.IDLE
        self.session: Optional[Conversation] = None
        self.generation_settings = self._default_generation_settings()
        self.current_answer = ""

        # 单轮对话的临时状态
        self._reassembler = FragmentReassembler(origin=getattr(provider_client, "sequence_origin", None))
        self._terminal_seen = False
        self._scope: Optional[RequestScope] = None
        self._turn_session: Optional[Conversation] = None
        self._token_base: Tuple[int, int] = (0, 0)
        self._last_reply: Optional[Message] = None
        self._log_ctx: Dict[str, Any] = {"provider": getattr(provider_client, "name", "unknown")}

    # ---- 状态与订阅 ----

    @property
    def processing_mode(self) -> ProcessingMode:
        return self._mode

    @property
    def messages(self) -> List[Message]:
        return list(self.session.messages) if self.session else []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self._events.subscribe(listener)

    # ---- 启动加载 ----

    async def initialize(self) -> bool:
        """在有界超时内加载生成参数与活跃会话；失败时发出 error 事件并返回 False。"""

        timeout = self._cfg.request_timeout
        try:
            gen, session = await asyncio.wait_for(asyncio.to_thread(self._load_initial_state), timeout=timeout)
        except asyncio.TimeoutError:
            self._emit_error(
                RequestTimeoutError(
                    code="BOOTSTRAP_TIMEOUT",
                    message=f"loading settings and sessions took longer than {timeout}s",
                )
            )
            return False
        except BusinessError as e:
            self._emit_error(e)
            return False

        self.generation_settings = gen
        self._events.emit(OrchestratorEvent(kind="settings_updated", settings=gen))
        self._load_session(session)
        return True

    def _load_initial_state(self) -> Tuple[GenerationSettings, Conversation]:
        defaults = self._default_generation_settings()
        gen = self._settings_store.get_settings(defaults) if self._settings_store else defaults
        return gen, self._resolve_active_session()

    def _resolve_active_session(self) -> Conversation:
        active_id = self._store.get_active_session_id()
        if active_id:
            try:
                return self._store.get_session(active_id)
            except StoreError as e:
                if e.code != "SESSION_NOT_FOUND":
                    raise
                logger.warning("Active session missing, falling back", extra={"extra": {"session_id": active_id}})
        session = self._store.get_most_recent_session()
        if session is None:
            session = self._store.insert_session(self._cfg.default_session_name, [])
        self._store.set_active_session_id(session.id)
        return session

    def _default_generation_settings(self) -> GenerationSettings:
        return GenerationSettings(model=self._cfg.default_model, max_tokens=self._cfg.default_max_tokens)

    # ---- 一轮对话 ----

    async def submit(self, prompt: str) -> Optional[Message]:
        """发送用户输入并消费流式结果，直到本轮结束。

        Returns:
            写入会话的 assistant 消息；出错或取消且无内容时为 None。

        Raises:
            ValidationError: 已有请求在进行、尚未加载会话或输入为空。
        """

        self._ensure_idle()
        if self.session is None:
            raise ValidationError(code="SESSION_NOT_LOADED", message="no active session, call initialize() first")
        if not prompt or not prompt.strip():
            raise ValidationError(code="EMPTY_PROMPT", message="prompt must not be empty")

        start_time = time.time()
        self._log_ctx["trace_id"] = f"tr-{uuid4().hex}"
        self._begin_turn(prompt)

        scope = RequestScope()
        channel = FragmentChannel(self._cfg.channel_buffer_size)
        self._scope = scope
        producer = asyncio.create_task(
            self._client.request_completion(scope, self.messages, self.generation_settings, channel),
            name=f"completion-{self.session.id}",
        )
        # 即使任务在开始运行前就被取消，通道也一定会关闭
        producer.add_done_callback(lambda _task: channel.close())
        scope.bind(producer)
        self._log(
            logging.INFO,
            "Requesting completion",
            model=self.generation_settings.model,
            message_count=len(self.session.messages),
        )
        self._events.emit(OrchestratorEvent(kind="processing_state_changed", processing=True))

        try:
            while True:
                fragment = await channel.get()
                if fragment is None:
                    self._handle_channel_closed(producer)
                    break
                if self.handle_fragment(fragment):
                    break
            try:
                await asyncio.wait_for(self._drain(channel), timeout=self._cfg.request_timeout)
            except asyncio.TimeoutError:
                self._log(logging.WARNING, "Stream still open after the turn ended, cancelling request")
                scope.cancel()
                channel.detach()
            await self._join(producer)
        except asyncio.CancelledError:
            scope.cancel()
            channel.detach()
            if self._mode is ProcessingMode.PROCESSING:
                self._finish_cancelled()
            raise
        finally:
            self._scope = None

        self._log(
            logging.INFO,
            "Completed turn",
            elapsed_seconds=round(time.time() - start_time, 2),
            mode=self._mode.value,
        )
        return self._last_reply

    def cancel(self) -> bool:
        """取消进行中的请求；没有请求时返回 False。

        本轮已结束但生产任务仍未关闭通道时，同样会取消该请求。
        """

        if self._scope is None:
            return False
        self._log(logging.INFO, "Cancelling completion")
        return self._scope.cancel()

    def handle_fragment(self, fragment: ResultFragment) -> bool:
        """处理一个片段，返回本轮是否已结束。"""

        if self._mode is not ProcessingMode.PROCESSING:
            self._log(logging.WARNING, "Dropping fragment outside of a turn", sequence_id=fragment.sequence_id)
            return True

        self._reassembler.accept(fragment)
        if fragment.usage is not None:
            self._persist_usage(fragment.usage)

        if fragment.error is not None:
            if isinstance(fragment.error, CompletionCancelled):
                self._finish_cancelled()
            else:
                self._fail(fragment.error)
            return True

        if fragment.is_terminal:
            self._terminal_seen = True
        if self._terminal_seen and self._reassembler.is_complete():
            self._finish_completed()
            return True

        try:
            self.current_answer = accumulate_text(self._reassembler.contiguous_prefix())
        except MalformedFragmentError as e:
            self._fail(e)
            return True
        self._events.emit(OrchestratorEvent(kind="chunk_processed", current_answer=self.current_answer))
        return False

    def _begin_turn(self, prompt: str) -> None:
        session = self.session
        session.messages.append(user_message(prompt))
        self._turn_session = session
        self._token_base = (session.prompt_token_count, session.completion_token_count)
        self._last_reply = None
        self._reset_transient()
        self._mode = ProcessingMode.PROCESSING

    def _handle_channel_closed(self, producer: asyncio.Task) -> None:
        # 通道关闭本身也是一种终止信号，但生产任务异常退出时不能当作正常结束
        if self._mode is not ProcessingMode.PROCESSING:
            return
        exc = _task_exception(producer)
        if exc is not None:
            self._fail(
                ApiError(
                    code="CLIENT_ERROR",
                    message=f"inference client failed: {exc!r}",
                    provider=self._log_ctx.get("provider"),
                )
            )
            return
        if self._scope is not None and self._scope.cancelled:
            self._finish_cancelled()
            return
        if self._reassembler.is_complete():
            self._finish_completed()
            return
        if len(self._reassembler) == 0:
            message = "stream closed without any fragments"
        else:
            message = "stream closed before all fragments arrived"
        self._fail(ApiError(code="INCOMPLETE_STREAM", message=message))

    async def _drain(self, channel: FragmentChannel) -> None:
        # 本轮结束后到达的片段只用于 token 统计（例如 stop 之后单独下发的 usage）
        async for fragment in channel:
            if fragment.usage is not None:
                self._persist_usage(fragment.usage)

    async def _join(self, producer: asyncio.Task) -> None:
        await asyncio.wait({producer}, timeout=self._cfg.request_timeout)
        if not producer.done():
            self._log(logging.WARNING, "Inference client ignored cancellation")
            return
        exc = _task_exception(producer)
        if exc is not None:
            self._log(logging.ERROR, "Inference client crashed", error=repr(exc))

    def _finish_completed(self) -> None:
        try:
            reply = build_final_message(self._reassembler.ordered_fragments())
        except MalformedFragmentError as e:
            self._fail(e)
            return
        self._commit(reply)
        self._events.emit(OrchestratorEvent(kind="processing_state_changed", processing=False, reply=reply))

    def _finish_cancelled(self) -> None:
        """取消路径：保存已连续到达的部分回答（可能为空），然后发出 cancelled。"""

        try:
            reply = build_final_message(self._reassembler.contiguous_prefix())
        except MalformedFragmentError as e:
            self._fail(e)
            return
        if reply.content:
            self._commit(reply)
        else:
            reply = None
            self._reset_transient()
            self._mode = ProcessingMode.IDLE
        self._log(logging.INFO, "Completion cancelled", saved_chars=len(reply.content) if reply else 0)
        self._events.emit(OrchestratorEvent(kind="cancelled", reply=reply))
        self._events.emit(OrchestratorEvent(kind="processing_state_changed", processing=False))

    def _commit(self, reply: Message) -> None:
        session = self._turn_session
        session.messages.append(reply)
        self._last_reply = reply
        self._reset_transient()
        try:
            self._store.update_messages(session.id, session.messages)
        except BusinessError as e:
            # 内存中的工作副本已包含新回答，但持久化副本可能是旧的
            self._mode = ProcessingMode.ERROR
            self._log(logging.ERROR, "Failed to store messages", error=e.message)
            self._emit_error(e)
            return
        self._mode = ProcessingMode.IDLE
        self._log(logging.INFO, "Stored assistant message", content_chars=len(reply.content))

    def _fail(self, error: BusinessError) -> None:
        self._mode = ProcessingMode.ERROR
        self._reset_transient()
        self._last_reply = None
        if self._scope is not None:
            self._scope.cancel()
        self._log(logging.ERROR, "Completion failed", code=error.code, error=error.message)
        self._emit_error(error)
        self._events.emit(OrchestratorEvent(kind="processing_state_changed", processing=False))

    def _persist_usage(self, usage: TokenUsage) -> None:
        session = self._turn_session
        if session is None:
            return
        prompt_tokens = self._token_base[0] + usage.prompt_tokens
        completion_tokens = self._token_base[1] + usage.completion_tokens
        session.prompt_token_count = prompt_tokens
        session.completion_token_count = completion_tokens
        try:
            self._store.update_token_counts(session.id, prompt_tokens, completion_tokens)
        except BusinessError as e:
            self._log(logging.ERROR, "Failed to store token counts", error=e.message)
            self._emit_error(e)
            return
        self._log(logging.INFO, "Token usage", prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)

    def _reset_transient(self) -> None:
        self._reassembler.clear()
        self._terminal_seen = False
        self.current_answer = ""

    # ---- 会话与设置 ----

    def list_sessions(self) -> List[Conversation]:
        return self._store.list_sessions()

    def new_session(self, name: Optional[str] = None) -> Conversation:
        self._ensure_idle()
        session = self._store.insert_session(name or self._cfg.default_session_name, [])
        self._store.set_active_session_id(session.id)
        self._load_session(session)
        return session

    def switch_session(self, session_id: str) -> Conversation:
        self._ensure_idle()
        session = self._store.get_session(session_id)
        self._store.set_active_session_id(session.id)
        self._load_session(session)
        return session

    def rename_session(self, session_id: str, name: str) -> None:
        self._ensure_idle()
        if not name or not name.strip():
            raise ValidationError(code="EMPTY_SESSION_NAME", message="session name must not be empty")
        self._store.rename_session(session_id, name)
        if self.session is not None and self.session.id == session_id:
            self.session.name = name

    def delete_session(self, session_id: str) -> None:
        """删除会话；删除的是当前会话时切换到最近的会话（没有则新建）。"""

        self._ensure_idle()
        self._store.delete_session(session_id)
        if self.session is not None and self.session.id == session_id:
            self.session = None
            self._load_session(self._resolve_active_session())

    def update_settings(self, **changes: Any) -> GenerationSettings:
        self._ensure_idle()
        unknown = set(changes) - set(GenerationSettings.__dataclass_fields__)
        if unknown:
            raise ValidationError(code="INVALID_SETTINGS", message=f"unknown settings: {sorted(unknown)}")
        new_settings = validate_generation_settings(replace(self.generation_settings, **changes))
        if self._settings_store is not None:
            new_settings = self._settings_store.update_settings(new_settings)
        self.generation_settings = new_settings
        self._events.emit(OrchestratorEvent(kind="settings_updated", settings=new_settings))
        return new_settings

    async def list_models(self) -> List[str]:
        timeout = self._cfg.request_timeout
        try:
            return await asyncio.wait_for(self._client.list_models(), timeout=timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(code="MODELS_TIMEOUT", message="Timed out while fetching models")

    def latest_bot_message(self) -> str:
        for message in reversed(self.messages):
            if message.role == "assistant":
                return message.content
        raise ValidationError(code="NO_ASSISTANT_MESSAGE", message="no assistant messages in this session")

    def messages_as_string(self) -> str:
        return "\n".join(m.content for m in self.messages)

    def _load_session(self, session: Conversation) -> None:
        self.session = session
        self._turn_session = None
        self._log_ctx["session_id"] = session.id
        if self._mode is ProcessingMode.ERROR:
            self._mode = ProcessingMode.IDLE
        self._events.emit(OrchestratorEvent(kind="session_loaded", session=session))

    def _ensure_idle(self) -> None:
        if self._mode is ProcessingMode.PROCESSING or self._scope is not None:
            raise ValidationError(code="REQUEST_IN_FLIGHT", message="a completion is already in progress")

    def _emit_error(self, error: BusinessError) -> None:
        self._events.emit(OrchestratorEvent(kind="error", message=error.message, error=error))

    def _log(self, level: int, message: str, **fields: Any) -> None:
        payload = dict(self._log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})


def _task_exception(task: asyncio.Task) -> Optional[BaseException]:
    if not task.done() or task.cancelled():
        return None
    return task.exception()
