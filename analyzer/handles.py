"""Opaque ciphertext handles, input proofs and address helpers.

A `CiphertextHandle` names an encrypted 32-bit value held by the co-processor.
It deliberately exposes no arithmetic or ordering: the only thing a caller can
do with one is pass it back to the co-processor or surface it for decryption.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence, Tuple

from eth_utils import to_checksum_address

HANDLE_BYTES = 32
ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")


def _strip_hex(value: str) -> str:
    candidate = (value or "").strip().lower()
    if candidate.startswith("0x"):
        candidate = candidate[2:]
    return candidate


def normalize_address(value: str) -> str:
    """Lower-case 0x address used as the key of every per-user store."""
    if not isinstance(value, str) or not ADDRESS_PATTERN.match(value.strip()):
        raise ValueError(f"invalid address: {value!r}")
    return "0x" + _strip_hex(value)


def checksum_address(value: str) -> str:
    return to_checksum_address(normalize_address(value))


@dataclass(frozen=True, eq=True)
class CiphertextHandle:
    raw: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.raw, (bytes, bytearray)) or len(self.raw) != HANDLE_BYTES:
            raise ValueError("ciphertext handle must be 32 bytes")
        object.__setattr__(self, "raw", bytes(self.raw))

    @classmethod
    def from_hex(cls, value: str) -> "CiphertextHandle":
        candidate = _strip_hex(value)
        if len(candidate) != HANDLE_BYTES * 2:
            raise ValueError("ciphertext handle must be 32 bytes")
        try:
            return cls(bytes.fromhex(candidate))
        except ValueError as exc:
            raise ValueError("ciphertext handle must be hex") from exc

    def hex(self) -> str:
        return "0x" + self.raw.hex()

    def short(self) -> str:
        return self.hex()[:10]

    def __repr__(self) -> str:
        return f"CiphertextHandle({self.short()}...)"

    def __str__(self) -> str:
        return self.hex()


@dataclass(frozen=True)
class InputProof:
    """Validity proof attached to a freshly encrypted input."""

    raw: bytes

    @classmethod
    def from_hex(cls, value: str) -> "InputProof":
        candidate = _strip_hex(value)
        try:
            return cls(bytes.fromhex(candidate))
        except ValueError as exc:
            raise ValueError("input proof must be hex") from exc

    def hex(self) -> str:
        return "0x" + self.raw.hex()

    def __repr__(self) -> str:
        return f"InputProof({len(self.raw)} bytes)"


@dataclass(frozen=True)
class EncryptedBatch:
    """Parallel arrays of handles and proofs, consumed positionally by the engine."""

    handles: Tuple[CiphertextHandle, ...]
    proofs: Tuple[InputProof, ...]

    def __post_init__(self) -> None:
        if len(self.handles) != len(self.proofs):
            raise ValueError("handles and proofs must have matching lengths")

    def __len__(self) -> int:
        return len(self.handles)

    @classmethod
    def of(cls, pairs: Sequence[Tuple[CiphertextHandle, InputProof]]) -> "EncryptedBatch":
        return cls(
            handles=tuple(handle for handle, _ in pairs),
            proofs=tuple(proof for _, proof in pairs),
        )
