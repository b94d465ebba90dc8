"""生成参数的取值范围校验。

范围与各厂商 chat/completions 接口保持一致：

- frequency: [-2.0, 2.0)
- temperature: [0.0, 2.0]
- top_p: [0.0, 1.0]
- max_tokens: (0, 1_000_000]
"""

from typing import Optional

from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import GenerationSettings

MAX_TOKENS_LIMIT = 1_000_000


def _check_range(
    name: str,
    value: Optional[float],
    low: float,
    high: float,
    low_strict: bool = False,
    high_strict: bool = False,
) -> None:
    if value is None:
        return
    too_low = value <= low if low_strict else value < low
    too_high = value >= high if high_strict else value > high
    if too_low or too_high:
        raise ValidationError(
            code="INVALID_SETTINGS",
            message=f"{name} value {value} out of range ({low}, {high})",
            field=name,
        )


def validate_generation_settings(gen: GenerationSettings) -> GenerationSettings:
    """校验生成参数，非法时抛出 ValidationError，合法时原样返回。"""

    if not gen.model:
        raise ValidationError(code="INVALID_SETTINGS", message="model must not be empty", field="model")
    if isinstance(gen.max_tokens, bool) or not isinstance(gen.max_tokens, int):
        raise ValidationError(code="INVALID_SETTINGS", message="max_tokens must be an integer", field="max_tokens")
    if gen.max_tokens <= 0 or gen.max_tokens > MAX_TOKENS_LIMIT:
        raise ValidationError(
            code="INVALID_SETTINGS",
            message=f"max_tokens value {gen.max_tokens} out of range (0, {MAX_TOKENS_LIMIT})",
            field="max_tokens",
        )
    _check_range("frequency", gen.frequency, -2.0, 2.0, high_strict=True)
    _check_range("temperature", gen.temperature, 0.0, 2.0)
    _check_range("top_p", gen.top_p, 0.0, 1.0)
    return gen
