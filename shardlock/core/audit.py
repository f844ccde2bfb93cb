from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any
from datetime import datetime, timezone


_lock = threading.Lock()


def append_audit(event: dict[str, Any], path: str | None = "./shardlock_audit.jsonl") -> None:
    if not path:
        return
    event = dict(event)
    event["ts"] = datetime.now(timezone.utc).isoformat()
    p = Path(path)
    line = json.dumps(event, ensure_ascii=False, default=str) + "\n"
    with _lock, p.open("a", encoding="utf-8") as f:
        f.write(line)


def read_audit(path: str) -> list[dict[str, Any]]:
    p = Path(path)
    if not p.exists():
        return []
    with p.open("r", encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]
