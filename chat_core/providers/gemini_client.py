"""Gemini Provider 适配器。

使用 REST 流式端点（SSE）：
- URL: {base_url}/models/{model}:streamGenerateContent?alt=sse
- 认证: x-goog-api-key: <api_key>

Orchestrator 按 OpenAI 的语义设计：OpenAI 在一个空内容片段上给出 finish_reason，
而 Gemini 把结束原因附在最后一个内容片段上。因此这里把结束原因从内容片段上去掉
（只保留 token 统计），流结束后再补发一个 finish_reason=stop 的结束哨兵。
Gemini 返回的引用来源会被收集、去重，在哨兵之前作为一个独立文本片段发出。
"""

import asyncio
import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

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
    TextDelta,
    TokenUsage,
)
from chat_core.domain.streaming import FragmentChannel, RequestScope
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import http_error, malformed, sse_data
from chat_core.providers.registry import GEMINI_CONFIG, filter_chat_models

MODEL_NAME_PREFIX = "models/"

# Gemini finishReason -> 统一结束原因；None 表示"不是结束"，缺失的键视为不支持
_FINISH_REASONS: Dict[str, Optional[FinishReason]] = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.LENGTH,
    "FINISH_REASON_UNSPECIFIED": None,
    "OTHER": None,
    "SAFETY": None,
}


class GeminiClient:
    """Gemini Provider 客户端实现。"""

    name = "gemini"
    sequence_origin = 0

    def __init__(self, cfg=settings):
        self._settings = cfg

    # ---- 流式补全 ----

    async def request_completion(
        self,
        scope: RequestScope,
        messages: Sequence[Message],
        settings: GenerationSettings,
        channel: FragmentChannel,
    ) -> None:
        seq = self.sequence_origin
        citations: List[str] = []
        try:
            self._require_api_key()
            payload = self._build_payload(messages, settings)
            logger.info("Gemini: sending message", extra={"extra": {"model": settings.model}})
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    f"{self._base_url()}/{MODEL_NAME_PREFIX}{settings.model}:streamGenerateContent",
                    params={"alt": "sse"},
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        raise http_error(self.name, resp.status_code, resp.text)
                    async for line in resp.aiter_lines():
                        data_str = sse_data(line)
                        if data_str is None:
                            continue
                        fragment, chunk_citations = self._parse_stream_chunk(data_str, seq)
                        citations.extend(chunk_citations)
                        await channel.put(fragment)
                        if fragment.error is not None:
                            return
                        seq += 1
            if citations:
                await channel.put(ResultFragment.text(seq, self._format_citations(citations)))
                seq += 1
            await channel.put(ResultFragment.sentinel(seq, FinishReason.STOP))
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
        names: List[str] = []
        page_token: Optional[str] = None
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                while True:
                    params = {"pageToken": page_token} if page_token else None
                    resp = await client.get(f"{self._base_url()}/models", params=params, headers=self._headers())
                    if resp.status_code >= 400:
                        raise http_error(self.name, resp.status_code, resp.text)
                    try:
                        data = resp.json()
                    except ValueError as e:
                        raise ApiError(code="BAD_RESPONSE", message=f"models response is not JSON: {e}")
                    for model in data.get("models") or []:
                        name = model.get("name") or ""
                        if name.startswith(MODEL_NAME_PREFIX):
                            name = name[len(MODEL_NAME_PREFIX):]
                        if name:
                            names.append(name)
                    page_token = data.get("nextPageToken")
                    if not page_token:
                        break
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        return filter_chat_models(GEMINI_CONFIG, names)

    # ---- 辅助方法 ----

    def _base_url(self) -> str:
        base = getattr(self._settings, "gemini_base_url", None) or "https://generativelanguage.googleapis.com/v1beta"
        return str(base).rstrip("/")

    def _require_api_key(self) -> None:
        if not getattr(self._settings, "gemini_api_key", None):
            raise ValidationError(code="MISSING_API_KEY", message="GEMINI_API_KEY not set")

    def _headers(self) -> Dict[str, str]:
        return {
            "x-goog-api-key": str(self._settings.gemini_api_key),
            "Content-Type": "application/json",
        }

    def _build_payload(self, messages: Sequence[Message], gen: GenerationSettings) -> Dict[str, Any]:
        contents = []
        for message in messages:
            if not message.content or message.role == "system":
                continue
            role = "model" if message.role == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": message.content}]})

        generation_config: Dict[str, Any] = {"maxOutputTokens": gen.max_tokens}
        if gen.temperature is not None:
            generation_config["temperature"] = gen.temperature
        if gen.top_p is not None:
            generation_config["topP"] = gen.top_p

        payload: Dict[str, Any] = {"contents": contents, "generationConfig": generation_config}
        system_msg = gen.system_prompt or getattr(self._settings, "system_message", "")
        if system_msg:
            payload["systemInstruction"] = {"parts": [{"text": system_msg}]}
        return payload

    def _parse_stream_chunk(self, data_str: str, seq: int) -> Tuple[ResultFragment, List[str]]:
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError as e:
            return malformed(seq, f"unparseable chunk: {e}"), []

        if not isinstance(data, dict):
            return malformed(seq, "chunk is not a JSON object"), []

        error_payload = data.get("error")
        if error_payload:
            message = error_payload.get("message") if isinstance(error_payload, dict) else str(error_payload)
            return ResultFragment.failure(seq, ApiError(code="PROVIDER_ERROR", message=message or "")), []

        candidates = data.get("candidates") or []
        if not isinstance(candidates, list):
            return malformed(seq, "candidates is not a list"), []
        if not candidates:
            feedback = data.get("promptFeedback")
            block_reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
            if block_reason:
                return (
                    ResultFragment.failure(
                        seq, ApiError(code="PROMPT_BLOCKED", message=f"Gemini blocked the prompt: {block_reason}")
                    ),
                    [],
                )
            return ResultFragment(sequence_id=seq), []

        candidate = candidates[0]
        if not isinstance(candidate, dict):
            return malformed(seq, f"candidate is not a JSON object: {candidate!r}"), []

        raw_reason = candidate.get("finishReason")
        finished = False
        if raw_reason:
            if raw_reason == "RECITATION":
                return (
                    ResultFragment.failure(
                        seq,
                        ApiError(
                            code="RECITATION",
                            message="LLM stopped responding due to response containing copyright material",
                        ),
                    ),
                    [],
                )
            if not isinstance(raw_reason, str) or raw_reason not in _FINISH_REASONS:
                logger.warning("Gemini: unexpected finish reason", extra={"extra": {"finish_reason": raw_reason}})
                return (
                    ResultFragment.failure(
                        seq, ApiError(code="UNSUPPORTED_FINISH_REASON", message=f"GeminiAPI: {raw_reason}")
                    ),
                    [],
                )
            finished = _FINISH_REASONS[raw_reason] is not None

        delta = EMPTY_DELTA
        content = candidate.get("content")
        parts = (content.get("parts") if isinstance(content, dict) else None) or []
        if not isinstance(parts, list):
            return malformed(seq, "content.parts is not a list"), []
        if parts:
            text = parts[0].get("text") if isinstance(parts[0], dict) else None
            delta = TextDelta(text) if isinstance(text, str) else MalformedDelta(raw=parts[0])

        citations: List[str] = []
        metadata = candidate.get("citationMetadata")
        sources = metadata.get("citationSources") if isinstance(metadata, dict) else None
        if not isinstance(sources, list):
            sources = []
        for source in sources:
            uri = source.get("uri") if isinstance(source, dict) else None
            if uri:
                citations.append(f"\t* [{uri}]({uri})")

        usage = None
        usage_raw = data.get("usageMetadata") or {}
        if finished and usage_raw:
            try:
                usage = TokenUsage(
                    prompt_tokens=int(usage_raw.get("promptTokenCount", 0) or 0),
                    completion_tokens=int(usage_raw.get("candidatesTokenCount", 0) or 0),
                )
            except (AttributeError, TypeError, ValueError) as e:
                return malformed(seq, f"unparseable usageMetadata: {e}"), []
        return ResultFragment(sequence_id=seq, delta=delta, usage=usage), citations

    @staticmethod
    def _format_citations(citations: List[str]) -> str:
        unique = list(dict.fromkeys(citations))
        return "\n\n`Sources`\n" + "\n".join(unique)
