"""OpenAI 兼容接口的流式适配器（OpenAI / Mistral / 本地推理服务）。

本模块负责：

1. 将会话消息与 GenerationSettings 转换为 chat/completions 请求体（含厂商差异）。
2. 以 SSE 方式接收流式响应，每个 data: 行解码为一个 ResultFragment，
   序号从 1 开始；"[DONE]" 转换为结束哨兵。
3. 把网络错误、HTTP 错误、无法解析的片段以及主动取消都转换为
   携带对应异常的终止片段，通过通道交给 Orchestrator。
"""

import asyncio
import json
from typing import Any, Dict, List, Optional, Sequence

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import (
    ApiError,
    BusinessError,
    CompletionCancelled,
    NetworkError,
    ValidationError,
)
from chat_core.domain.models import (
    EMPTY_DELTA,
    FinishReason,
    GenerationSettings,
    MalformedDelta,
    Message,
    ResultFragment,
    TokenUsage,
    decode_delta,
)
from chat_core.domain.streaming import FragmentChannel, RequestScope
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import http_error, malformed, sse_data
from chat_core.providers.registry import (
    LOCAL_CONFIG,
    apply_request_quirks,
    detect_openai_compatible,
    filter_chat_models,
    supports_system_message,
)


class OpenAiClient:
    """OpenAI 兼容接口客户端实现。"""

    name = "openai"
    sequence_origin = 1

    def __init__(self, cfg=settings):
        # Settings 里包含 base_url、api_key、超时等配置
        self._settings = cfg
        self._provider = detect_openai_compatible(self._base_url())

    @property
    def provider_config(self):
        return self._provider

    # ---- 流式补全 ----

    async def request_completion(
        self,
        scope: RequestScope,
        messages: Sequence[Message],
        settings: GenerationSettings,
        channel: FragmentChannel,
    ) -> None:
        seq = self.sequence_origin
        try:
            self._require_api_key()
            payload = self._build_payload(messages, settings)
            logger.info(
                "OpenAI: requesting completion",
                extra={"extra": {"provider": self._provider.name, "model": settings.model}},
            )
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    f"{self._base_url()}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        raise http_error(self._provider.name, resp.status_code, resp.text)
                    async for line in resp.aiter_lines():
                        data_str = sse_data(line)
                        if data_str is None:
                            continue
                        if data_str == "[DONE]":
                            await channel.put(ResultFragment.sentinel(seq))
                            return
                        fragment = self._parse_stream_chunk(data_str, seq)
                        await channel.put(fragment)
                        if fragment.error is not None:
                            return
                        seq += 1
            # 没有 [DONE] 的流由通道关闭作为终止信号
        except asyncio.CancelledError:
            if not scope.cancelled:
                raise
            await channel.put(
                ResultFragment.failure(seq, CompletionCancelled(code="CANCELLED", message="completion cancelled"))
            )
        except httpx.RequestError as e:
            await channel.put(ResultFragment.failure(seq, NetworkError(code="NETWORK_ERROR", message=str(e))))
        except BusinessError as e:
            await channel.put(ResultFragment.failure(seq, e))

    # ---- 模型列表 ----

    async def list_models(self) -> List[str]:
        self._require_api_key()
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.get(f"{self._base_url()}/models", headers=self._headers())
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code >= 400:
            raise http_error(self._provider.name, resp.status_code, resp.text)
        try:
            data = resp.json()
        except ValueError as e:
            raise ApiError(code="BAD_RESPONSE", message=f"models response is not JSON: {e}")
        ids = [item.get("id") for item in data.get("data") or [] if isinstance(item, dict) and item.get("id")]
        return filter_chat_models(self._provider, ids)

    # ---- 辅助方法 ----

    def _base_url(self) -> str:
        return str(getattr(self._settings, "openai_base_url", None) or "https://api.openai.com/v1").rstrip("/")

    def _require_api_key(self) -> None:
        # 本地推理服务一般不校验密钥
        if self._provider is LOCAL_CONFIG:
            return
        if not getattr(self._settings, "openai_api_key", None):
            raise ValidationError(code="MISSING_API_KEY", message="OPENAI_API_KEY not set")

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = getattr(self._settings, "openai_api_key", None)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _build_payload(self, messages: Sequence[Message], gen: GenerationSettings) -> Dict[str, Any]:
        msgs: List[Dict[str, str]] = []
        if supports_system_message(self._provider, gen.model):
            system_msg = gen.system_prompt or getattr(self._settings, "system_message", "")
            if system_msg:
                msgs.append({"role": "system", "content": system_msg})
        for message in messages:
            if message.content:
                msgs.append(message.to_payload())

        params: Dict[str, Any] = {
            "model": gen.model,
            "frequency_penalty": gen.frequency,
            "max_tokens": gen.max_tokens,
            "stream": True,
            "messages": msgs,
        }
        if gen.temperature is not None:
            params["temperature"] = gen.temperature
        if gen.top_p is not None:
            params["top_p"] = gen.top_p
        return apply_request_quirks(self._provider, params)

    def _parse_stream_chunk(self, data_str: str, seq: int) -> ResultFragment:
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError as e:
            logger.warning("OpenAI: unparseable chunk", extra={"extra": {"sequence_id": seq, "error": str(e)}})
            return malformed(seq, f"unparseable chunk: {e}")
        if not isinstance(data, dict):
            return malformed(seq, "chunk is not a JSON object")

        error_payload = data.get("error")
        if error_payload:
            message = error_payload.get("message") if isinstance(error_payload, dict) else str(error_payload)
            return ResultFragment.failure(
                seq, ApiError(code="PROVIDER_ERROR", message=message or "provider reported an error")
            )

        delta = EMPTY_DELTA
        finish_reason = FinishReason.NONE
        choices = data.get("choices") or []
        if not isinstance(choices, list):
            return malformed(seq, "choices is not a list")
        if choices:
            choice = choices[0]
            if not isinstance(choice, dict):
                return malformed(seq, f"choice is not a JSON object: {choice!r}")
            raw_delta = choice.get("delta")
            if raw_delta is None or isinstance(raw_delta, dict):
                delta = decode_delta(raw_delta)
            else:
                delta = MalformedDelta(raw=raw_delta)
            raw_reason = choice.get("finish_reason")
            finish_reason = FinishReason.parse(raw_reason if isinstance(raw_reason, str) else None)

        try:
            usage = self._parse_usage(data.get("usage"))
        except (AttributeError, TypeError, ValueError) as e:
            return malformed(seq, f"unparseable usage: {e}")

        return ResultFragment(sequence_id=seq, delta=delta, finish_reason=finish_reason, usage=usage)

    @staticmethod
    def _parse_usage(raw: Optional[Dict[str, Any]]) -> Optional[TokenUsage]:
        if not raw:
            return None
        return TokenUsage(
            prompt_tokens=int(raw.get("prompt_tokens", 0) or 0),
            completion_tokens=int(raw.get("completion_tokens", 0) or 0),
        )
