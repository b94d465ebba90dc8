"""流式补全编排引擎。

- reassembler: 按序号恢复片段顺序并检测缺口。
- accumulator: 把有序片段拼接为最终 assistant 消息。
- events: 面向 UI 层的通知事件。
- orchestrator: 串联请求、流式接收、持久化与通知的状态机。
"""
