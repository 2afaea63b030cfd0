import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import StateListener, StateStorage
from chat_core.domain.exceptions import BusinessError
from chat_core.infrastructure.logging.logger import log_event

STATE_VERSION = 0


class JsonStateStorage(StateStorage):
    """把整个会话状态保存在单个 JSON 文件（一个持久化 key）里。

    文件内容：{"state": {...}, "version": 0}。写入走临时文件 + os.replace，
    避免其它进程读到半个文件。

    跨进程同步：poll() 比较文件指纹，发现是别的实例写入的就重新读取，
    并把完整状态推送给所有订阅者（整体替换，后写者胜）。
    """

    def __init__(self, root: str | Path | None = None, key: Optional[str] = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._key = key or settings.state_key
        self._path = self._root / f"{self._key}.json"
        self._listeners: List[StateListener] = []
        self._fingerprint: Optional[str] = self._current_fingerprint()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Optional[Dict[str, Any]]:
        if not self._path.exists():
            return None
        try:
            raw = self._path.read_bytes()
            data = json.loads(raw.decode("utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), path=str(self._path))
        self._fingerprint = self._digest(raw)
        state = data.get("state") if isinstance(data, dict) else None
        if not isinstance(state, dict):
            raise BusinessError(code="STORE_READ_ERROR", message="missing state record", path=str(self._path))
        return state

    def save(self, state: Dict[str, Any]) -> None:
        raw = json.dumps({"state": state, "version": STATE_VERSION}, ensure_ascii=False).encode("utf-8")
        tmp_path = self._root / f"{self._key}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_bytes(raw)
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), path=str(self._path))
        self._fingerprint = self._digest(raw)

    def clear(self) -> None:
        try:
            self._path.unlink(missing_ok=True)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), path=str(self._path))
        self._fingerprint = None

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def poll(self) -> bool:
        """检查文件是否被其它实例改写；是则通知订阅者并返回 True。"""

        current = self._current_fingerprint()
        if current is None or current == self._fingerprint:
            return False
        self.publish_change()
        return True

    def publish_change(self) -> None:
        state = self.load()
        if state is None:
            return
        log_event(logging.INFO, "Storage changed externally", path=str(self._path), listeners=len(self._listeners))
        for listener in list(self._listeners):
            listener(state)

    def _current_fingerprint(self) -> Optional[str]:
        try:
            return self._digest(self._path.read_bytes())
        except FileNotFoundError:
            return None
        except OSError as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), path=str(self._path))

    @staticmethod
    def _digest(raw: bytes) -> str:
        return hashlib.sha1(raw).hexdigest()
