"""片段重组器。

Provider 的生产任务与 Orchestrator 并发运行，片段到达顺序不等于逻辑顺序，
这里按 sequence_id 恢复顺序并判断流是否已经连续无缺口。

内部以 dict 按序号分桶（同一序号的重复片段按到达顺序保留），
并维护最小/最大序号，使完整性判断为 O(1)；排序视图按需生成并缓存。
"""

from typing import Dict, List, Optional

from chat_core.domain.models import ResultFragment


class FragmentReassembler:
    def __init__(self, origin: Optional[int] = None):
        # origin: 生产方分配的首个序号；设置后，最小序号必须等于 origin 才算完整
        self._origin = origin
        self._by_id: Dict[int, List[ResultFragment]] = {}
        self._min: Optional[int] = None
        self._max: Optional[int] = None
        self._count = 0
        self._sorted_ids: Optional[List[int]] = []

    @property
    def origin(self) -> Optional[int]:
        return self._origin

    def __len__(self) -> int:
        return self._count

    def accept(self, fragment: ResultFragment) -> None:
        seq = fragment.sequence_id
        bucket = self._by_id.get(seq)
        if bucket is None:
            self._by_id[seq] = [fragment]
            self._sorted_ids = None
            self._min = seq if self._min is None else min(self._min, seq)
            self._max = seq if self._max is None else max(self._max, seq)
        else:
            bucket.append(fragment)
        self._count += 1

    def is_complete(self) -> bool:
        """非空且序号从最小值起连续无缺口。"""

        if not self._by_id:
            return False
        if self._origin is not None and self._min != self._origin:
            return False
        return self._max - self._min + 1 == len(self._by_id)

    def ordered_fragments(self) -> List[ResultFragment]:
        """按 sequence_id 稳定排序后的全部片段。"""

        ordered: List[ResultFragment] = []
        for seq in self._ordered_ids():
            ordered.extend(self._by_id[seq])
        return ordered

    def contiguous_prefix(self) -> List[ResultFragment]:
        """从起点开始、直到第一个缺口之前的片段。

        起点为 origin（若设置）否则为最小序号；起点本身缺失时返回空列表。
        """

        if not self._by_id:
            return []
        expected = self._origin if self._origin is not None else self._min
        prefix: List[ResultFragment] = []
        for seq in self._ordered_ids():
            if seq < expected:
                continue
            if seq != expected:
                break
            prefix.extend(self._by_id[seq])
            expected += 1
        return prefix

    def clear(self) -> None:
        self._by_id = {}
        self._min = None
        self._max = None
        self._count = 0
        self._sorted_ids = []

    def _ordered_ids(self) -> List[int]:
        if self._sorted_ids is None:
            self._sorted_ids = sorted(self._by_id)
        return self._sorted_ids
