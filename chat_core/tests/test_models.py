import pytest

from chat_core.domain.exceptions import ApiError, ValidationError
from chat_core.domain.models import (
    EMPTY_DELTA,
    FinishReason,
    GenerationSettings,
    MalformedDelta,
    Message,
    ResultFragment,
    TextDelta,
    decode_delta,
)
from chat_core.domain.validators import validate_generation_settings


def test_decode_delta_variants():
    assert decode_delta(None) is EMPTY_DELTA
    assert decode_delta({"role": "assistant"}) is EMPTY_DELTA
    assert decode_delta({"content": None}) is EMPTY_DELTA
    assert decode_delta({"content": "hi"}) == TextDelta("hi")
    assert decode_delta({"content": ["x"]}) == MalformedDelta(raw=["x"])


def test_finish_reason_parse():
    assert FinishReason.parse("stop") is FinishReason.STOP
    assert FinishReason.parse("length") is FinishReason.LENGTH
    assert FinishReason.parse(None) is FinishReason.NONE
    assert FinishReason.parse("tool_calls") is FinishReason.NONE
    assert not FinishReason.NONE.is_terminal


def test_fragment_terminal_flags():
    assert ResultFragment.sentinel(3).is_terminal
    assert ResultFragment.text(1, "x", FinishReason.STOP).is_terminal
    assert not ResultFragment.text(1, "x").is_terminal
    failure = ResultFragment.failure(2, ApiError(code="API_ERROR", message="boom"))
    assert failure.is_terminal and failure.error.code == "API_ERROR"


def test_message_payload():
    msg = Message.from_payload({"role": "assistant", "content": "hi"})
    assert msg == Message("assistant", "hi")
    assert msg.to_payload() == {"role": "assistant", "content": "hi"}


def test_generation_settings_dict_ignores_unknown_keys():
    gen = GenerationSettings.from_dict({"model": "m", "max_tokens": 10, "legacy": True})
    assert gen.to_dict()["model"] == "m"
    assert gen.frequency == 0.0


@pytest.mark.parametrize(
    "changes",
    [
        {"max_tokens": 0},
        {"max_tokens": 1_000_001},
        {"temperature": -0.1},
        {"temperature": 2.1},
        {"top_p": 1.5},
        {"frequency": 2.0},
        {"frequency": -2.1},
        {"model": ""},
    ],
)
def test_invalid_generation_settings(changes):
    base = {"model": "m", "max_tokens": 10}
    base.update(changes)
    with pytest.raises(ValidationError) as exc:
        validate_generation_settings(GenerationSettings(**base))
    assert exc.value.code == "INVALID_SETTINGS"


def test_boundary_generation_settings_are_valid():
    gen = GenerationSettings(model="m", max_tokens=1_000_000, temperature=2.0, top_p=0.0, frequency=-2.0)
    assert validate_generation_settings(gen) is gen
