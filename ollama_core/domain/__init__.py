"""领域层模型与协议。

包含：
- models: 请求体、流记录、聚合结果与 StreamConfig。
- conversation: 会话实体及 ConversationStore 抽象。
- exceptions: 业务异常类型定义。
"""
