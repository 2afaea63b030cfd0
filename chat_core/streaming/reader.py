"""传输层行读取器。

网络层交付的字节块不保证与协议帧对齐：一个 UTF-8 字符、一行 `data: ...`
都可能被拆在两个块之间。TransportReader 负责：

1. 使用有状态的增量解码器解码（不能逐块独立 decode）。
2. 只输出以换行结尾的完整行（去掉 `\\n` / `\\r\\n`）。
3. 最后一个换行之后的内容留在缓冲区，等待下一块。
4. 流结束时 finish() 把剩余内容按同样规则切分并输出（响应可能没有结尾换行）。
"""

import codecs
from typing import List


class TransportReader:
    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    @property
    def pending_text(self) -> str:
        """尚未遇到换行的缓冲内容。"""

        return self._buffer

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer += self._decoder.decode(chunk)
        return self._drain_lines()

    def finish(self) -> List[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        lines = self._drain_lines()
        if self._buffer:
            lines.append(self._strip_cr(self._buffer))
            self._buffer = ""
        return lines

    def _drain_lines(self) -> List[str]:
        lines: List[str] = []
        start = 0
        while True:
            idx = self._buffer.find("\n", start)
            if idx == -1:
                break
            lines.append(self._strip_cr(self._buffer[start:idx]))
            start = idx + 1
        if start:
            self._buffer = self._buffer[start:]
        return lines

    @staticmethod
    def _strip_cr(line: str) -> str:
        return line[:-1] if line.endswith("\r") else line
