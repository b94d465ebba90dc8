"""完成累加器：把有序片段拼接为最终的 assistant 消息。"""

from typing import Iterable

from chat_core.domain.exceptions import MalformedFragmentError
from chat_core.domain.models import MalformedDelta, Message, ResultFragment, TextDelta


def accumulate_text(fragments: Iterable[ResultFragment]) -> str:
    """按顺序拼接文本增量，遇到结束哨兵或 stop/length 时停止。

    结束片段本身及其之后的内容都不计入（部分后端会在结束后补发空片段）。
    任何范围内的 MalformedDelta 都会导致 MalformedFragmentError。
    """

    pieces = []
    for fragment in fragments:
        if fragment.is_terminal:
            break
        delta = fragment.delta
        if isinstance(delta, TextDelta):
            pieces.append(delta.text)
        elif isinstance(delta, MalformedDelta):
            raise MalformedFragmentError(
                code="MALFORMED_FRAGMENT",
                message=f"fragment {fragment.sequence_id} delta is not text: {type(delta.raw).__name__}",
                sequence_id=fragment.sequence_id,
            )
    return "".join(pieces)


def build_final_message(ordered_fragments: Iterable[ResultFragment]) -> Message:
    return Message(role="assistant", content=accumulate_text(ordered_fragments))
