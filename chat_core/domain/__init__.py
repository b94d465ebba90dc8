"""领域层模型与协议。

包含：
- models: Message / ResultFragment / GenerationSettings 等统一模型。
- conversation: 会话模型及 SessionStore / SettingsStore 抽象。
- streaming: FragmentChannel 与 RequestScope。
- validators: 生成参数校验。
- exceptions: 业务异常类型定义。
"""
