"""Boundary to the external FHE co-processor.

The engine never touches plaintexts. It asks the co-processor to verify
freshly encrypted inputs, to combine handles with a small instruction set
(add/sub/mul/compare/select), to grant decryption rights, and to reveal the
single boolean produced by a threshold check.

`LocalCoprocessor` implements the same boundary in-process. Plaintexts live
only inside it, keyed by opaque handles; input proofs are keyed digests bound
to `(handle, contract, user)`; user decryption verifies the EIP-712
authorization exactly as the remote service does.
"""
from __future__ import annotations

import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple, Union

from eth_abi.packed import encode_packed
from eth_keys import keys
from eth_utils import keccak

from .errors import DecryptionRefused, EncodingError, ProofVerificationFailed, SignatureExpired
from .handles import CiphertextHandle, InputProof, checksum_address, normalize_address
from .typed_data import build_user_decrypt_message, canonical_contracts, expires_at, recover_signer

logger = logging.getLogger(__name__)

UINT32_MAX = 2**32 - 1
UINT32_MOD = 2**32
UINT64_MOD = 2**64
MAX_DECRYPTION_DURATION_DAYS = 365

EUINT32 = "euint32"
EUINT64 = "euint64"
EBOOL = "ebool"

INTEGER_MODULI = {EUINT32: UINT32_MOD, EUINT64: UINT64_MOD}

DecryptedValue = Union[int, bool]


@dataclass(frozen=True)
class KeyPair:
    public_key: str
    private_key: str


@dataclass(frozen=True)
class DecryptionRequest:
    handle: CiphertextHandle
    contract_address: str


def derive_public_key(private_key: str) -> str:
    candidate = private_key[2:] if private_key.startswith("0x") else private_key
    return keys.PrivateKey(bytes.fromhex(candidate)).public_key.to_hex()


class Coprocessor(Protocol):
    @property
    def protocol_id(self) -> int: ...

    def generate_keypair(self) -> KeyPair: ...

    def encrypt(self, value: int, contract_address: str, user_address: str) -> Tuple[CiphertextHandle, InputProof]: ...

    def verify_input(
        self,
        handle: CiphertextHandle,
        proof: InputProof,
        contract_address: str,
        user_address: str,
    ) -> CiphertextHandle: ...

    def trivial(self, value: int) -> CiphertextHandle: ...

    def as_euint64(self, handle: CiphertextHandle) -> CiphertextHandle: ...

    def add(self, lhs: CiphertextHandle, rhs: CiphertextHandle) -> CiphertextHandle: ...

    def sub(self, lhs: CiphertextHandle, rhs: CiphertextHandle) -> CiphertextHandle: ...

    def mul(self, lhs: CiphertextHandle, rhs: CiphertextHandle) -> CiphertextHandle: ...

    def mul_scalar(self, lhs: CiphertextHandle, scalar: int) -> CiphertextHandle: ...

    def div_scalar(self, lhs: CiphertextHandle, divisor: int) -> CiphertextHandle: ...

    def gt(self, lhs: CiphertextHandle, rhs: CiphertextHandle) -> CiphertextHandle: ...

    def or_(self, lhs: CiphertextHandle, rhs: CiphertextHandle) -> CiphertextHandle: ...

    def select(
        self,
        condition: CiphertextHandle,
        if_true: CiphertextHandle,
        if_false: CiphertextHandle,
    ) -> CiphertextHandle: ...

    def allow(self, handle: CiphertextHandle, account: str) -> None: ...

    def is_allowed(self, handle: CiphertextHandle, account: str) -> bool: ...

    def reveal_bool(self, handle: CiphertextHandle) -> bool: ...

    def user_decrypt(
        self,
        requests: Sequence[DecryptionRequest],
        *,
        private_key: str,
        public_key: str,
        signature: str,
        contract_addresses: Sequence[str],
        user_address: str,
        start_timestamp: int,
        duration_days: int,
    ) -> Dict[str, DecryptedValue]: ...


class LocalCoprocessor:
    """In-process co-processor with euint32 / euint64 wrap-around semantics."""

    def __init__(
        self,
        *,
        protocol_id: int,
        chain_id: int,
        decryption_verifying_contract: str,
        secret: Optional[bytes] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._protocol_id = int(protocol_id)
        self.chain_id = int(chain_id)
        self.decryption_verifying_contract = checksum_address(decryption_verifying_contract)
        self._secret = secret or secrets.token_bytes(32)
        self._salt = secrets.token_bytes(32)
        self._clock = clock or (lambda: int(time.time()))
        self._lock = threading.RLock()
        self._counter = 0
        self._values: Dict[bytes, Tuple[str, int]] = {}
        self._acl: Dict[bytes, Set[str]] = {}

    @property
    def protocol_id(self) -> int:
        return self._protocol_id

    # ------------------------------------------------------------------
    # Handle bookkeeping
    # ------------------------------------------------------------------
    def _new_handle(self, kind: str, value: int) -> CiphertextHandle:
        with self._lock:
            self._counter += 1
            raw = keccak(encode_packed(["bytes32", "uint256"], [self._salt, self._counter]))
            self._values[raw] = (kind, value)
            return CiphertextHandle(raw)

    def _read(self, handle: CiphertextHandle, kind: str) -> int:
        with self._lock:
            entry = self._values.get(handle.raw)
        if entry is None:
            raise ProofVerificationFailed(f"unknown ciphertext handle {handle.short()}")
        stored_kind, value = entry
        if stored_kind != kind:
            raise ProofVerificationFailed(f"handle {handle.short()} is {stored_kind}, expected {kind}")
        return value

    def _read_integer(self, handle: CiphertextHandle) -> Tuple[str, int]:
        with self._lock:
            entry = self._values.get(handle.raw)
        if entry is None:
            raise ProofVerificationFailed(f"unknown ciphertext handle {handle.short()}")
        kind, value = entry
        if kind not in INTEGER_MODULI:
            raise ProofVerificationFailed(f"handle {handle.short()} is {kind}, expected an integer type")
        return kind, value

    def _operands(self, lhs: CiphertextHandle, rhs: CiphertextHandle) -> Tuple[str, int, int]:
        left_kind, left = self._read_integer(lhs)
        right_kind, right = self._read_integer(rhs)
        if left_kind != right_kind:
            raise ProofVerificationFailed(f"operand types differ: {left_kind} and {right_kind}")
        return left_kind, left, right

    def _proof_digest(self, handle: CiphertextHandle, contract_address: str, user_address: str) -> bytes:
        return keccak(
            encode_packed(
                ["bytes32", "bytes32", "address", "address"],
                [
                    self._secret,
                    handle.raw,
                    checksum_address(contract_address),
                    checksum_address(user_address),
                ],
            )
        )

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------
    def generate_keypair(self) -> KeyPair:
        private = keys.PrivateKey(secrets.token_bytes(32))
        return KeyPair(public_key=private.public_key.to_hex(), private_key=private.to_hex())

    def encrypt(self, value: int, contract_address: str, user_address: str) -> Tuple[CiphertextHandle, InputProof]:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0 or value > UINT32_MAX:
            raise EncodingError(f"value does not fit in euint32: {value!r}")
        handle = self._new_handle(EUINT32, value)
        proof = InputProof(self._proof_digest(handle, contract_address, user_address))
        return handle, proof

    def verify_input(
        self,
        handle: CiphertextHandle,
        proof: InputProof,
        contract_address: str,
        user_address: str,
    ) -> CiphertextHandle:
        expected = self._proof_digest(handle, contract_address, user_address)
        if not hmac.compare_digest(expected, proof.raw):
            raise ProofVerificationFailed(f"input proof rejected for handle {handle.short()}")
        self._read(handle, EUINT32)
        return handle

    def trivial(self, value: int) -> CiphertextHandle:
        return self._new_handle(EUINT32, int(value) % UINT32_MOD)

    def as_euint64(self, handle: CiphertextHandle) -> CiphertextHandle:
        _, value = self._read_integer(handle)
        return self._new_handle(EUINT64, value)

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------
    def add(self, lhs: CiphertextHandle, rhs: CiphertextHandle) -> CiphertextHandle:
        kind, left, right = self._operands(lhs, rhs)
        return self._new_handle(kind, (left + right) % INTEGER_MODULI[kind])

    def sub(self, lhs: CiphertextHandle, rhs: CiphertextHandle) -> CiphertextHandle:
        kind, left, right = self._operands(lhs, rhs)
        return self._new_handle(kind, (left - right) % INTEGER_MODULI[kind])

    def mul(self, lhs: CiphertextHandle, rhs: CiphertextHandle) -> CiphertextHandle:
        kind, left, right = self._operands(lhs, rhs)
        return self._new_handle(kind, (left * right) % INTEGER_MODULI[kind])

    def mul_scalar(self, lhs: CiphertextHandle, scalar: int) -> CiphertextHandle:
        kind, value = self._read_integer(lhs)
        return self._new_handle(kind, (value * int(scalar)) % INTEGER_MODULI[kind])

    def div_scalar(self, lhs: CiphertextHandle, divisor: int) -> CiphertextHandle:
        if int(divisor) <= 0:
            raise ValueError("divisor must be a positive plaintext")
        kind, value = self._read_integer(lhs)
        return self._new_handle(kind, value // int(divisor))

    def gt(self, lhs: CiphertextHandle, rhs: CiphertextHandle) -> CiphertextHandle:
        _, left, right = self._operands(lhs, rhs)
        return self._new_handle(EBOOL, int(left > right))

    def or_(self, lhs: CiphertextHandle, rhs: CiphertextHandle) -> CiphertextHandle:
        return self._new_handle(EBOOL, int(bool(self._read(lhs, EBOOL)) or bool(self._read(rhs, EBOOL))))

    def select(
        self,
        condition: CiphertextHandle,
        if_true: CiphertextHandle,
        if_false: CiphertextHandle,
    ) -> CiphertextHandle:
        kind, when_true, when_false = self._operands(if_true, if_false)
        return self._new_handle(kind, when_true if self._read(condition, EBOOL) else when_false)
    # ------------------------------------------------------------------
    # Access control and decryption
    # ------------------------------------------------------------------
    def allow(self, handle: CiphertextHandle, account: str) -> None:
        with self._lock:
            self._acl.setdefault(handle.raw, set()).add(normalize_address(account))

    def is_allowed(self, handle: CiphertextHandle, account: str) -> bool:
        with self._lock:
            return normalize_address(account) in self._acl.get(handle.raw, set())

    def reveal_bool(self, handle: CiphertextHandle) -> bool:
        return bool(self._read(handle, EBOOL))

    def user_decrypt(
        self,
        requests: Sequence[DecryptionRequest],
        *,
        private_key: str,
        public_key: str,
        signature: str,
        contract_addresses: Sequence[str],
        user_address: str,
        start_timestamp: int,
        duration_days: int,
    ) -> Dict[str, DecryptedValue]:
        if not requests:
            return {}
        if int(duration_days) <= 0 or int(duration_days) > MAX_DECRYPTION_DURATION_DAYS:
            raise DecryptionRefused(f"durationDays must be within 1..{MAX_DECRYPTION_DURATION_DAYS}")
        now = self._clock()
        if now < int(start_timestamp):
            raise DecryptionRefused("decryption signature is not yet valid")
        if now >= expires_at(start_timestamp, duration_days):
            raise SignatureExpired("decryption signature has expired")

        try:
            derived = derive_public_key(private_key)
        except ValueError as exc:
            raise DecryptionRefused("malformed decryption key pair") from exc
        if derived.lower() != public_key.lower():
            raise DecryptionRefused("decryption key pair does not match the signed public key")

        contracts = canonical_contracts(contract_addresses)
        full_message = build_user_decrypt_message(
            public_key=public_key,
            contract_addresses=contracts,
            start_timestamp=start_timestamp,
            duration_days=duration_days,
            chain_id=self.chain_id,
            verifying_contract=self.decryption_verifying_contract,
        )
        try:
            recovered = recover_signer(full_message, signature)
        except Exception as exc:
            raise DecryptionRefused("decryption signature is malformed") from exc
        user = normalize_address(user_address)
        if normalize_address(recovered) != user:
            raise DecryptionRefused("decryption signature was not produced by the requesting user")

        covered = {address.lower() for address in contracts}
        results: Dict[str, DecryptedValue] = {}
        for request in requests:
            contract = normalize_address(request.contract_address)
            if contract not in covered:
                raise DecryptionRefused(f"signature does not cover contract {request.contract_address}")
            if not self.is_allowed(request.handle, user) or not self.is_allowed(request.handle, contract):
                raise DecryptionRefused(f"user is not allowed to decrypt {request.handle.short()}")
            with self._lock:
                entry = self._values.get(request.handle.raw)
            if entry is None:
                raise DecryptionRefused(f"unknown ciphertext handle {request.handle.short()}")
            kind, value = entry
            results[request.handle.hex()] = bool(value) if kind == EBOOL else value
        logger.debug("User decryption served %s handles for %s", len(results), user)
        return results


def requests_for(handles: Iterable[CiphertextHandle], contract_address: str) -> List[DecryptionRequest]:
    return [DecryptionRequest(handle=handle, contract_address=contract_address) for handle in handles]
