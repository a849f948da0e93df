"""EIP-712 message used to authorize user decryption of result handles."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Sequence

from eth_account import Account
from eth_account.messages import encode_typed_data

from .handles import checksum_address

DECRYPTION_DOMAIN_NAME = "Decryption"
DECRYPTION_DOMAIN_VERSION = "1"
PRIMARY_TYPE = "UserDecryptRequestVerification"
SECONDS_PER_DAY = 86_400

EIP712_DOMAIN_FIELDS = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

USER_DECRYPT_FIELDS = [
    {"name": "publicKey", "type": "bytes"},
    {"name": "contractAddresses", "type": "address[]"},
    {"name": "startTimestamp", "type": "uint256"},
    {"name": "durationDays", "type": "uint256"},
    {"name": "extraData", "type": "bytes"},
]


def canonical_contracts(contract_addresses: Iterable[str]) -> List[str]:
    """Checksum, dedupe and sort contract addresses.

    Sorting uses the lower-case form so the order does not depend on checksum
    casing.
    """
    unique: Dict[str, str] = {}
    for address in contract_addresses:
        checksummed = checksum_address(address)
        unique[checksummed.lower()] = checksummed
    return [unique[key] for key in sorted(unique)]


def _as_bytes(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    candidate = value.strip()
    if candidate.startswith("0x"):
        candidate = candidate[2:]
    return bytes.fromhex(candidate)


def build_user_decrypt_message(
    *,
    public_key: str,
    contract_addresses: Sequence[str],
    start_timestamp: int,
    duration_days: int,
    chain_id: int,
    verifying_contract: str,
    extra_data: str | bytes = b"",
) -> Dict[str, Any]:
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_FIELDS,
            PRIMARY_TYPE: USER_DECRYPT_FIELDS,
        },
        "primaryType": PRIMARY_TYPE,
        "domain": {
            "name": DECRYPTION_DOMAIN_NAME,
            "version": DECRYPTION_DOMAIN_VERSION,
            "chainId": int(chain_id),
            "verifyingContract": checksum_address(verifying_contract),
        },
        "message": {
            "publicKey": _as_bytes(public_key),
            "contractAddresses": canonical_contracts(contract_addresses),
            "startTimestamp": int(start_timestamp),
            "durationDays": int(duration_days),
            "extraData": _as_bytes(extra_data),
        },
    }


def recover_signer(full_message: Dict[str, Any], signature: str | bytes) -> str:
    signable = encode_typed_data(full_message=full_message)
    return Account.recover_message(signable, signature=_as_bytes(signature))


def expires_at(start_timestamp: int, duration_days: int) -> int:
    return int(start_timestamp) + int(duration_days) * SECONDS_PER_DAY
