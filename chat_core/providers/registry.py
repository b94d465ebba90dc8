"""Provider 配置与请求差异。

OpenAI 兼容接口背后可能是 OpenAI、Mistral 或本地推理服务，它们在以下方面不同：

- 哪些模型可用于对话（前缀白名单 + 关键字黑名单，黑名单优先）；
- 是否支持 system 消息（OpenAI 推理模型 o* 不支持）；
- 是否支持 stream_options.include_usage（OpenAI 与本地服务支持）；
- 推理模型不接受 max_tokens。

具体是哪一家由 base_url 中的主机名判断，集中配置在这里。"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Tuple


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    host_markers: Tuple[str, ...] = ()
    chat_model_prefixes: Tuple[str, ...] = ()
    exclusion_keywords: Tuple[str, ...] = ()
    include_stream_usage: bool = False
    has_reasoning_models: bool = False


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    host_markers=("api.openai.com",),
    chat_model_prefixes=("gpt-", "o1", "o3"),
    exclusion_keywords=("audio", "realtime", "instruct"),
    include_stream_usage=True,
    has_reasoning_models=True,
)

MISTRAL_CONFIG = ProviderConfig(
    name="mistral",
    host_markers=("api.mistral.ai",),
    exclusion_keywords=("pixtral", "embed"),
)

LOCAL_CONFIG = ProviderConfig(
    name="local",
    host_markers=("localhost", "127.0.0.1", "::1"),
    include_stream_usage=True,
)

GEMINI_CONFIG = ProviderConfig(
    name="gemini",
    exclusion_keywords=("aqa", "imagen", "embedding", "bison"),
)


def detect_openai_compatible(api_url: str) -> ProviderConfig:
    """按 base_url 判断 OpenAI 兼容接口背后的厂商，未识别的一律按本地服务处理。"""

    for cfg in (OPENAI_CONFIG, MISTRAL_CONFIG, LOCAL_CONFIG):
        if any(marker in api_url for marker in cfg.host_markers):
            return cfg
    return LOCAL_CONFIG


def is_reasoning_model(cfg: ProviderConfig, model: str) -> bool:
    return cfg.has_reasoning_models and model.startswith("o")


def supports_system_message(cfg: ProviderConfig, model: str) -> bool:
    return not is_reasoning_model(cfg, model)


def is_chat_model(cfg: ProviderConfig, model: str) -> bool:
    if any(keyword in model for keyword in cfg.exclusion_keywords):
        return False
    if cfg.chat_model_prefixes:
        return any(model.startswith(prefix) for prefix in cfg.chat_model_prefixes)
    return True


def filter_chat_models(cfg: ProviderConfig, models: Iterable[str]) -> List[str]:
    return [m for m in models if is_chat_model(cfg, m)]


def apply_request_quirks(cfg: ProviderConfig, params: Dict[str, Any]) -> Dict[str, Any]:
    """按厂商差异调整请求体（原地修改并返回）。"""

    if cfg.include_stream_usage:
        params["stream_options"] = {"include_usage": True}
    if is_reasoning_model(cfg, str(params.get("model", ""))):
        params.pop("max_tokens", None)
    return params
