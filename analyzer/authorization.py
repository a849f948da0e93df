"""Time-bounded decryption authorization (EIP-712 user-decrypt signatures).

A `DecryptionSignature` lets its owner convert result handles from a fixed
set of contracts back into plaintext for `duration_days` starting at
`start_timestamp`. Signatures are cached per `(user, contracts)` with one
signing flow in flight per slot, and re-created lazily once they expire or
stop matching the session key pair.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from .cache import SingleFlightCache
from .coprocessor import Coprocessor, KeyPair
from .errors import AuthorizationDeclined
from .handles import checksum_address, normalize_address
from .signer import Signer
from .typed_data import build_user_decrypt_message, canonical_contracts, expires_at

logger = logging.getLogger(__name__)

DEFAULT_DURATION_DAYS = 365


@dataclass(frozen=True)
class SignatureKey:
    user_address: str
    contract_addresses: Tuple[str, ...]


@dataclass(frozen=True)
class DecryptionSignature:
    private_key: str
    public_key: str
    signature: str
    contract_addresses: Tuple[str, ...]
    user_address: str
    start_timestamp: int
    duration_days: int

    @property
    def expires_at(self) -> int:
        return expires_at(self.start_timestamp, self.duration_days)

    def is_valid(self, now: int) -> bool:
        return self.start_timestamp <= now < self.expires_at

    def matches(self, keypair: Optional[KeyPair]) -> bool:
        if keypair is None:
            return False
        return (
            keypair.public_key.lower() == self.public_key.lower()
            and keypair.private_key.lower() == self.private_key.lower()
        )

    def cache_key(self) -> SignatureKey:
        return SignatureKey(
            user_address=normalize_address(self.user_address),
            contract_addresses=tuple(address.lower() for address in self.contract_addresses),
        )

    def to_json(self) -> Dict[str, Any]:
        """Wire form presented to the decryption boundary (includes the private key)."""
        return {
            "private_key": self.private_key,
            "public_key": self.public_key,
            "signature": self.signature,
            "contract_addresses": list(self.contract_addresses),
            "user_address": self.user_address,
            "start_timestamp": self.start_timestamp,
            "duration_days": self.duration_days,
        }


class DecryptionSession:
    """Client-side session owning the current ephemeral re-encryption key pair."""

    def __init__(
        self,
        coprocessor: Coprocessor,
        *,
        chain_id: int,
        verifying_contract: str,
        duration_days: int = DEFAULT_DURATION_DAYS,
        keypair: Optional[KeyPair] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.coprocessor = coprocessor
        self.chain_id = int(chain_id)
        self.verifying_contract = checksum_address(verifying_contract)
        self.duration_days = int(duration_days)
        self._clock = clock or (lambda: int(time.time()))
        self._lock = threading.Lock()
        self._keypair = keypair or coprocessor.generate_keypair()

    @property
    def keypair(self) -> KeyPair:
        with self._lock:
            return self._keypair

    def install(self, keypair: KeyPair) -> None:
        with self._lock:
            self._keypair = keypair

    def now(self) -> int:
        return int(self._clock())


SignatureCache = SingleFlightCache[SignatureKey, DecryptionSignature]


def _sign(session: DecryptionSession, contracts: Sequence[str], signer: Signer) -> DecryptionSignature:
    keypair = session.coprocessor.generate_keypair()
    start = session.now()
    message = build_user_decrypt_message(
        public_key=keypair.public_key,
        contract_addresses=contracts,
        start_timestamp=start,
        duration_days=session.duration_days,
        chain_id=session.chain_id,
        verifying_contract=session.verifying_contract,
    )
    raw = signer.sign_typed_data(message)
    session.install(keypair)
    logger.info(
        "Signed decryption authorization user=%s contracts=%s start=%s days=%s",
        signer.address,
        len(contracts),
        start,
        session.duration_days,
    )
    return DecryptionSignature(
        private_key=keypair.private_key,
        public_key=keypair.public_key,
        signature="0x" + bytes(raw).hex(),
        contract_addresses=tuple(contracts),
        user_address=checksum_address(signer.address),
        start_timestamp=start,
        duration_days=session.duration_days,
    )


def load_or_sign(
    session: DecryptionSession,
    contract_addresses: Sequence[str],
    signer: Signer,
    cache: SignatureCache,
) -> Optional[DecryptionSignature]:
    """Return a valid cached signature or obtain a fresh one.

    Slots are keyed by `(user, contracts)`. A cached signature is fresh while
    it is inside its window and its key pair is still the session's.

    Returns None when the user declines to sign; callers treat that as an
    aborted operation and do not retry.
    """
    contracts = canonical_contracts(contract_addresses)
    key = SignatureKey(
        user_address=normalize_address(signer.address),
        contract_addresses=tuple(address.lower() for address in contracts),
    )

    def is_fresh(candidate: DecryptionSignature) -> bool:
        return candidate.is_valid(session.now()) and candidate.matches(session.keypair)

    try:
        return cache.get_or_compute(key, lambda: _sign(session, contracts, signer), is_fresh)
    except AuthorizationDeclined as exc:
        logger.warning("Decryption authorization declined user=%s: %s", signer.address, exc)
        return None
