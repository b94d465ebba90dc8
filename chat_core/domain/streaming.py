"""Orchestrator 与推理客户端共享的并发原语。

- FragmentChannel: 单生产者/单消费者的 ResultFragment 通道，支持显式关闭。
- RequestScope: 一次进行中补全请求的可取消句柄。
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional

from chat_core.domain.models import ResultFragment

_CLOSED = object()


class FragmentChannel:
    """生产任务与 Orchestrator 之间的小缓冲通道。"""

    def __init__(self, maxsize: int = 64):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._detached = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def put(self, fragment: ResultFragment) -> None:
        if self._detached:
            return
        if self._closed:
            raise RuntimeError("put() on a closed FragmentChannel")
        await self._queue.put(fragment)

    def close(self) -> None:
        """标记流结束，可重复调用。"""

        if self._closed:
            return
        self._closed = True
        # 队列为空时消费者可能正阻塞在 get() 上，放入结束标记唤醒它
        if self._queue.empty():
            self._queue.put_nowait(_CLOSED)

    def detach(self) -> None:
        """消费方已离开：丢弃已缓冲的片段，之后的 put 直接忽略。"""

        self._detached = True
        while not self._queue.empty():
            self._queue.get_nowait()

    async def get(self) -> Optional[ResultFragment]:
        """返回下一个片段；通道关闭且取空后返回 None。"""

        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self) -> AsyncIterator[ResultFragment]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ResultFragment]:
        while True:
            fragment = await self.get()
            if fragment is None:
                return
            yield fragment


class RequestScope:
    """一次补全请求的协作式取消。

    Orchestrator 把生产任务绑定到 scope 上，cancel() 设置标记并取消该任务；
    客户端捕获 asyncio.CancelledError 后通过 ``scope.cancelled`` 区分主动取消与其他取消。
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def bind(self, task: asyncio.Task) -> None:
        self._task = task
        if self._cancelled and not task.done():
            task.cancel()

    def cancel(self) -> bool:
        if self._cancelled:
            return False
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return True
