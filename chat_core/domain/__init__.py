"""领域层模型与协议。

包含：
- models: ChatMessage / ChatRequest / ChatResult / ApiMetrics 等数据模型。
- conversation: 会话状态、轮次阶段及 KeyValueStore 抽象。
- exceptions: 业务异常类型定义。
"""
