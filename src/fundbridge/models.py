"""Domain data structures shared by the gateway, chain client and engine."""

import re
from dataclasses import dataclass
from typing import Any, TypeAlias

import fundbridge.constants as C
from fundbridge.errors import MalformedCandidate

# 64 raw bytes, X||Y of the account's public key
Address: TypeAlias = bytes

_HEX_KEY = re.compile(rf"[0-9a-fA-F]{{{C.PUBLIC_KEY_HEX_LEN}}}")


def decode_public_key(public_key: str | None, request_id: int | None = None) -> bytes:
    """Decode a request's public key, which must be exactly 128 hex characters.

    Raises:
        MalformedCandidate: on wrong length or non-hex characters.
    """
    if not isinstance(public_key, str) or len(public_key) != C.PUBLIC_KEY_HEX_LEN:
        length = len(public_key) if isinstance(public_key, str) else None
        raise MalformedCandidate(request_id, f"public key has length {length}, expected {C.PUBLIC_KEY_HEX_LEN}")
    # bytes.fromhex skips whitespace, so a padded key would decode short
    if not _HEX_KEY.fullmatch(public_key):
        raise MalformedCandidate(request_id, "public key is not hex")
    return bytes.fromhex(public_key)


def derive_address(public_key: bytes) -> Address:
    """Bazo addresses are the uncompressed public key coordinates themselves."""
    if len(public_key) != C.ADDRESS_LEN:
        raise ValueError(f"public key must be {C.ADDRESS_LEN} bytes, got {len(public_key)}")
    return bytes(public_key)


def short(address: Address) -> str:
    return address.hex()[:12]


@dataclass(slots=True)
class FundingRequest:
    id: int
    user_id: int | None = None
    public_key: str = ""
    amount: int = 0
    status: str = ""
    app_id: str | None = None
    max_amount: int | None = None
    token: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FundingRequest":
        """Parse one entry of a request-service ``response``.

        Raises:
            ValueError / TypeError / KeyError if ``id`` or ``amount`` aren't integers.
        """
        return cls(
            id=int(data["id"]),
            user_id=data.get("user_id"),
            public_key=data.get("public_key") or "",
            amount=int(data.get("amount") or 0),
            status=data.get("status") or "",
            app_id=data.get("app_id"),
            max_amount=data.get("max_amount"),
            token=data.get("token"),
        )

    @property
    def address(self) -> Address:
        return derive_address(decode_public_key(self.public_key, self.id))


@dataclass(slots=True)
class ChainAccount:
    address: Address
    tx_count: int
    balance: int = 0

    @classmethod
    def from_detail(cls, detail: dict[str, Any], address: Address) -> "ChainAccount":
        return cls(
            address=address,
            tx_count=int(detail.get("txCnt", 0)),
            balance=int(detail.get("balance", 0)),
        )


@dataclass(frozen=True, slots=True)
class AccountCreateTx:
    target: Address
    issuer: Address
    fee: int = C.DEFAULT_FEE
    header: int = C.DEFAULT_HEADER

    @property
    def kind(self) -> C.TxKind:
        return C.TxKind.ACCOUNT_CREATE


@dataclass(frozen=True, slots=True)
class FundsTransferTx:
    source: Address
    target: Address
    amount: int
    nonce: int
    fee: int = C.DEFAULT_FEE
    header: int = C.DEFAULT_HEADER

    @property
    def kind(self) -> C.TxKind:
        return C.TxKind.FUNDS_TRANSFER


UnsignedTx: TypeAlias = AccountCreateTx | FundsTransferTx


@dataclass(frozen=True, slots=True)
class SignedTransaction:
    hash: bytes
    signature: bytes
    kind: C.TxKind

    def __str__(self):
        return f"{self.kind} -- {self.hash.hex()[:16]}"


@dataclass(slots=True)
class Submission:
    """A transaction the chain accepted on behalf of a request."""
    request_id: int
    kind: C.TxKind
    tx_hash: str
    target: str
    amount: int = 0
    # Issuer nonce of a funds transfer
    nonce: int | None = None
    submitted_at: float = 0.0
    acknowledged: bool = False
