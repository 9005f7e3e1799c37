import json
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .constants import DEFAULT_EVENT_LOG_FILE
from .secrets import redact_secrets


class RunLogger:
    """Append-only JSONL event log shared by every engine component."""

    def __init__(self, log_dir: str, filename: str = DEFAULT_EVENT_LOG_FILE) -> None:
        self.log_dir = log_dir
        self.log_path = os.path.join(log_dir, filename)
        os.makedirs(log_dir, exist_ok=True)
        self._lock = threading.Lock()

    def _ts(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def log(self, event: str, **fields: Any) -> None:
        rec: Dict[str, Any] = {"ts": self._ts(), "event": event}
        # Redact any sensitive info before writing to disk
        rec.update(redact_secrets(fields))
        line = json.dumps(rec, ensure_ascii=False, default=str)
        with self._lock:
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read(self, event: Optional[str] = None) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        if not os.path.exists(self.log_path):
            return out
        with open(self.log_path, "r", encoding="utf-8") as f:
            for line in f:
                try:
                    rec = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event is None or rec.get("event") == event:
                    out.append(rec)
        return out

    def path(self) -> str:
        return self.log_path
