"""Chat Gateway 顶层包。

该包实现聊天 Web 应用的后端代理：接收浏览器的聊天请求，
转发给上游 LLM Provider，并以流式文本把回复逐段写回客户端；
同时负责超时与有限重试、流失败后的整段回退，以及可选的会话持久化。
"""

__version__ = "0.3.0"
