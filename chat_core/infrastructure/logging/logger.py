"""JSON-lines 日志。

所有模块共用名为 "chat_core" 的 logger，输出到 <log_dir>/chat.log，
每行一个 JSON 对象：ts / level / name / msg，再合并 extra 字段。
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from chat_core.config.settings import settings

LOGGER_NAME = "chat_core"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if settings.log_redact_content:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload.update(fields)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(settings.log_level)
    if logger.handlers:
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "chat.log", encoding="utf-8")
    fh.setFormatter(JsonFormatter())
    logger.addHandler(fh)
    return logger


logger = setup_logger()


def log_event(level: int, message: str, context: Optional[Dict[str, Any]] = None, **fields: Any) -> None:
    """记录一条结构化事件：context（如 trace_id）与 fields 合并后写入 JSON 行。"""

    payload = dict(context or {})
    payload.update(fields)
    logger.log(level, message, extra={"fields": payload})
