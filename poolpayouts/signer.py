"""Signing abstraction for the treasury key."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from eth_account import Account
from eth_account.signers.local import LocalAccount


class SignerError(RuntimeError):
    pass


class Signer(Protocol):
    @property
    def address(self) -> str: ...

    def sign_transaction(self, tx: dict[str, Any]) -> bytes: ...


@dataclass(frozen=True)
class LocalSigner:
    account: LocalAccount

    @classmethod
    def from_key(cls, private_key: str) -> "LocalSigner":
        try:
            return cls(Account.from_key(private_key))
        except Exception as exc:  # eth-keys raises its own ValidationError
            raise SignerError("Treasury private key is not a valid secp256k1 key") from exc

    @property
    def address(self) -> str:
        return self.account.address

    def sign_transaction(self, tx: dict[str, Any]) -> bytes:
        signed = Account.sign_transaction(tx, self.account.key)
        raw = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction", None)
        if raw is None:  # pragma: no cover
            raise SignerError("Signed transaction missing raw bytes")
        return bytes(raw)
