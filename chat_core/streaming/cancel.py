"""流式请求的取消令牌。"""

import threading


class CancelToken:
    """可从任意线程触发的一次性取消标记。

    读取循环在每个网络块之间检查 cancelled；触发后循环退出，
    客户端的上下文管理器负责关闭底层 HTTP 响应。
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
