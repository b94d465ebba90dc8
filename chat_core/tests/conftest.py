import asyncio

import pytest

from chat_core.domain.exceptions import CompletionCancelled
from chat_core.domain.models import ResultFragment


class ScriptedClient:
    """按脚本发出片段的推理客户端，hang=True 时发完后一直等待直到被取消。"""

    name = "scripted"

    def __init__(self, fragments, sequence_origin=0, hang=False):
        self.fragments = list(fragments)
        self.sequence_origin = sequence_origin
        self.hang = hang
        self.requests = []
        self.models = ["gpt-x"]

    async def request_completion(self, scope, messages, settings, channel):
        self.requests.append((list(messages), settings))
        ids = [f.sequence_id for f in self.fragments]
        next_seq = max(ids) + 1 if ids else self.sequence_origin
        try:
            for fragment in self.fragments:
                await channel.put(fragment)
                await asyncio.sleep(0)
            if self.hang:
                await asyncio.Event().wait()
        except asyncio.CancelledError:
            if not scope.cancelled:
                raise
            await channel.put(
                ResultFragment.failure(next_seq, CompletionCancelled(code="CANCELLED", message="completion cancelled"))
            )

    async def list_models(self):
        return list(self.models)


class CfgStub:
    default_model = "gpt-x"
    default_max_tokens = 100
    default_session_name = "New Session"
    request_timeout = 1.0
    channel_buffer_size = 8


@pytest.fixture
def scripted_client():
    return ScriptedClient


@pytest.fixture
def cfg():
    return CfgStub()


async def _poll(predicate):
    while not predicate():
        await asyncio.sleep(0.001)


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout=1.0):
        await asyncio.wait_for(_poll(predicate), timeout)

    return _wait
