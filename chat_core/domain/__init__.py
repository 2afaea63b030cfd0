"""领域层模型与协议。

包含：
- models: 附件、消息状态、请求体等共享模型。
- conversation: 会话与消息的存储模型及 StateStorage 协议。
- exceptions: 业务异常类型定义。
"""
