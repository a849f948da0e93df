"""Notifications emitted by the engine for external observers."""
from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortfolioUpdated:
    user: str
    timestamp: int
    name: str = "PortfolioUpdated"


@dataclass(frozen=True)
class ThresholdAlert:
    user: str
    alert_type: str
    name: str = "ThresholdAlert"


@dataclass(frozen=True)
class StressTestCompleted:
    user: str
    scenario: int
    name: str = "StressTestCompleted"


Event = Union[PortfolioUpdated, ThresholdAlert, StressTestCompleted]
Subscriber = Callable[[Event], None]


class EventBus:
    def __init__(self, journal_path: Optional[Path] = None, history: int = 1000) -> None:
        self.journal_path = journal_path
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=history)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _write_journal(self, entry: Dict[str, Any]) -> None:
        if not self.journal_path:
            return
        try:
            self.journal_path.parent.mkdir(parents=True, exist_ok=True)
            with self.journal_path.open("a", encoding="utf-8") as handle:
                json.dump(entry, handle, separators=(",", ":"))
                handle.write("\n")
        except OSError as exc:
            # Journal is best-effort; engine state is already committed.
            logger.warning("Failed to append event journal %s: %s", self.journal_path, exc)

    def emit(self, event: Event) -> None:
        entry = {"recorded_at": datetime.now(timezone.utc).isoformat(), **asdict(event)}
        with self._lock:
            self._recent.append(entry)
            subscribers = list(self._subscribers)
        self._write_journal(entry)
        logger.info("Event %s user=%s", event.name, event.user)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed for %s", event.name)

    def recent(self, user: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        with self._lock:
            entries = list(self._recent)
        if user:
            wanted = user.lower()
            entries = [entry for entry in entries if str(entry.get("user", "")).lower() == wanted]
        return list(reversed(entries))[:limit]
