"""推理客户端集成层。

该包下的模块负责：
- 定义 InferenceClient 抽象接口 (base)。
- 维护各厂商的请求差异与模型过滤规则 (registry)。
- 提供各厂商的具体实现 (openai_client、gemini_client)。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ValidationError
from chat_core.providers.base import InferenceClient
from chat_core.providers.gemini_client import GeminiClient
from chat_core.providers.openai_client import OpenAiClient


def create_provider(name: Optional[str] = None) -> InferenceClient:
    """根据名称创建推理客户端，默认取配置中的 provider。"""

    provider_name = (name or getattr(settings, "default_provider", "openai")).lower()
    if provider_name == "openai":
        return OpenAiClient(settings)
    if provider_name == "gemini":
        return GeminiClient(settings)
    raise ValidationError(code="UNKNOWN_PROVIDER", message=f"Api type not supported: {provider_name}")
