"""Account signers that authorize user decryption."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Protocol

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount


class Signer(Protocol):
    @property
    def address(self) -> str: ...

    def sign_typed_data(self, full_message: Dict[str, Any]) -> bytes: ...


@dataclass(frozen=True)
class LocalSigner:
    account: LocalAccount

    @classmethod
    def from_key(cls, private_key: str) -> "LocalSigner":
        return cls(Account.from_key(private_key))

    @property
    def address(self) -> str:
        return self.account.address

    def sign_typed_data(self, full_message: Dict[str, Any]) -> bytes:
        signed = self.account.sign_message(encode_typed_data(full_message=full_message))
        return bytes(signed.signature)

