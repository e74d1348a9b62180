from typing import Final
from enum import StrEnum


class RequestStatus(StrEnum):
    OPEN          = "open"
    PENDING       = "pending"
    FUNDPROCESSED = "fundprocessed"
    PROCESSED     = "processed"


class TxKind(StrEnum):
    ACCOUNT_CREATE = "accTx"
    FUNDS_TRANSFER = "fundsTx"


OK: Final = "OK"
HTTP_OK: Final = 200

PUBLIC_KEY_HEX_LEN: Final = 128
ADDRESS_LEN: Final = 64
TX_HASH_LEN: Final = 32
SIGNATURE_LEN: Final = 64
COORD_LEN: Final = 32

DEFAULT_FEE = 1
DEFAULT_HEADER = 0
REQUEST_TIMEOUT = 10.0
CHAIN_TIMEOUT = 10.0
SUBMIT_TIMEOUT = 30.0
CYCLE_INTERVAL = 30
STATUS_INTERVAL = 10
RESUBMIT_AFTER = 600
SHUTDOWN_GRACE = 30

__all__ = [
    "ADDRESS_LEN",
    "CHAIN_TIMEOUT",
    "COORD_LEN",
    "CYCLE_INTERVAL",
    "DEFAULT_FEE",
    "DEFAULT_HEADER",
    "HTTP_OK",
    "OK",
    "PUBLIC_KEY_HEX_LEN",
    "REQUEST_TIMEOUT",
    "RESUBMIT_AFTER",
    "SHUTDOWN_GRACE",
    "SIGNATURE_LEN",
    "STATUS_INTERVAL",
    "SUBMIT_TIMEOUT",
    "TX_HASH_LEN",

    ######
    "RequestStatus",
    "TxKind",
]
