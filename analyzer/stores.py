"""Per-user encrypted state, keyed by normalized user address.

Stores are injected into the engine. Without a path they live in memory;
with one they persist to JSON the same way the ledger does (write to a
sibling `.tmp` file, then replace).
"""
from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .handles import CiphertextHandle, normalize_address


@dataclass(frozen=True)
class PortfolioRecord:
    asset_count: int
    balances: Tuple[CiphertextHandle, ...]
    prices: Tuple[CiphertextHandle, ...]
    last_update: int

    def __post_init__(self) -> None:
        if len(self.balances) != self.asset_count or len(self.prices) != self.asset_count:
            raise ValueError("portfolio arrays must be exactly asset_count long")

    def to_json(self) -> Dict[str, Any]:
        return {
            "asset_count": self.asset_count,
            "balances": [handle.hex() for handle in self.balances],
            "prices": [handle.hex() for handle in self.prices],
            "last_update": self.last_update,
        }

    @classmethod
    def from_json(cls, raw: Dict[str, Any]) -> "PortfolioRecord":
        return cls(
            asset_count=int(raw["asset_count"]),
            balances=tuple(CiphertextHandle.from_hex(item) for item in raw["balances"]),
            prices=tuple(CiphertextHandle.from_hex(item) for item in raw["prices"]),
            last_update=int(raw.get("last_update") or 0),
        )


@dataclass(frozen=True)
class ThresholdRecord:
    value_threshold: CiphertextHandle
    risk_threshold: CiphertextHandle
    is_set: bool = True

    def to_json(self) -> Dict[str, Any]:
        return {
            "value_threshold": self.value_threshold.hex(),
            "risk_threshold": self.risk_threshold.hex(),
            "is_set": self.is_set,
        }

    @classmethod
    def from_json(cls, raw: Dict[str, Any]) -> "ThresholdRecord":
        return cls(
            value_threshold=CiphertextHandle.from_hex(raw["value_threshold"]),
            risk_threshold=CiphertextHandle.from_hex(raw["risk_threshold"]),
            is_set=bool(raw.get("is_set", True)),
        )


class _JsonStore:
    """Address-keyed mapping with optional JSON persistence."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path
        self._lock = threading.RLock()
        self._records: Dict[str, Any] = {}
        self._load()

    def _decode(self, raw: Any) -> Any:
        return raw

    def _encode(self, record: Any) -> Any:
        return record

    def _load(self) -> None:
        if self.path is None:
            return
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return
        with self.path.open("r", encoding="utf-8") as handle:
            try:
                data = json.load(handle)
            except json.JSONDecodeError:
                data = {}
        if not isinstance(data, dict):
            return
        for user, raw in data.items():
            try:
                self._records[normalize_address(user)] = self._decode(raw)
            except (KeyError, TypeError, ValueError):
                continue

    def _persist(self) -> None:
        if self.path is None:
            return
        tmp = self.path.with_suffix(".tmp")
        data = {user: self._encode(record) for user, record in self._records.items()}
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, sort_keys=True)
        tmp.replace(self.path)

    def _get(self, user: str) -> Any:
        with self._lock:
            return self._records.get(normalize_address(user))

    def _put(self, user: str, record: Any) -> None:
        with self._lock:
            self._records[normalize_address(user)] = record
            self._persist()


class PortfolioStore(_JsonStore):
    def _decode(self, raw: Any) -> PortfolioRecord:
        return PortfolioRecord.from_json(raw)

    def _encode(self, record: PortfolioRecord) -> Dict[str, Any]:
        return record.to_json()

    def get(self, user: str) -> Optional[PortfolioRecord]:
        return self._get(user)

    def replace(self, user: str, record: PortfolioRecord) -> PortfolioRecord:
        """Swap the user's whole portfolio; `last_update` never moves backwards."""
        with self._lock:
            previous = self.get(user)
            if previous is not None and record.last_update < previous.last_update:
                record = PortfolioRecord(
                    asset_count=record.asset_count,
                    balances=record.balances,
                    prices=record.prices,
                    last_update=previous.last_update,
                )
            self._put(user, record)
            return record


class ThresholdStore(_JsonStore):
    def _decode(self, raw: Any) -> ThresholdRecord:
        return ThresholdRecord.from_json(raw)

    def _encode(self, record: ThresholdRecord) -> Dict[str, Any]:
        return record.to_json()

    def get(self, user: str) -> Optional[ThresholdRecord]:
        return self._get(user)

    def put(self, user: str, record: ThresholdRecord) -> None:
        self._put(user, record)

    def is_set(self, user: str) -> bool:
        record = self.get(user)
        return bool(record and record.is_set)


class AlertStore(_JsonStore):
    def _decode(self, raw: Any) -> bool:
        return bool(raw)

    def get(self, user: str) -> bool:
        return bool(self._get(user))

    def set(self, user: str, triggered: bool) -> None:
        self._put(user, bool(triggered))


class UserLocks:
    """Hands out one re-entrant lock per user address."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def for_user(self, user: str) -> threading.RLock:
        key = normalize_address(user)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock
