from __future__ import annotations

import json
import threading
from dataclasses import asdict
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from intenthealer.core.metadata import HealAttempt


class HealingAuditLogger:
    """Appends one JSON line per heal attempt."""

    def __init__(self, root: str | Path = "artifacts") -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.heal_log_path = self.root / "heal_attempts.jsonl"
        self._lock = threading.Lock()

    def write(self, attempt: HealAttempt) -> None:
        payload = asdict(attempt)
        payload["recorded_at"] = datetime.now(UTC).isoformat()
        line = json.dumps(payload, ensure_ascii=False)
        with self._lock, self.heal_log_path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def read_attempts(self) -> list[dict[str, Any]]:
        if not self.heal_log_path.exists():
            return []
        with self.heal_log_path.open("r", encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]
