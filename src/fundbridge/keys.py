"""Issuer key material.

Key files use the Bazo layout: three lines of hex holding the public key's X
and Y coordinates and the private scalar D on the P-256 curve.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, decode_dss_signature

import fundbridge.constants as C
from fundbridge.errors import KeyFileError
from fundbridge.models import Address, derive_address

log = logging.getLogger("fundbridge.keys")

CURVE = ec.SECP256R1()


def encode_signature(r: int, s: int) -> bytes:
    """r||s as two big-endian integers, each left-zero-padded to 32 bytes."""
    return r.to_bytes(C.COORD_LEN, "big") + s.to_bytes(C.COORD_LEN, "big")


@dataclass(frozen=True)
class IssuerKey:
    private_key: ec.EllipticCurvePrivateKey

    @property
    def public_key_bytes(self) -> bytes:
        nums = self.private_key.public_key().public_numbers()
        return nums.x.to_bytes(C.COORD_LEN, "big") + nums.y.to_bytes(C.COORD_LEN, "big")

    @property
    def address(self) -> Address:
        return derive_address(self.public_key_bytes)

    def sign(self, tx_hash: bytes) -> bytes:
        """Sign a 32 byte transaction hash, returning the 64 byte r||s signature."""
        if len(tx_hash) != C.TX_HASH_LEN:
            raise ValueError(f"tx hash must be {C.TX_HASH_LEN} bytes, got {len(tx_hash)}")
        der = self.private_key.sign(tx_hash, ec.ECDSA(Prehashed(hashes.SHA256())))
        r, s = decode_dss_signature(der)
        return encode_signature(r, s)

    @classmethod
    def generate(cls) -> "IssuerKey":
        return cls(ec.generate_private_key(CURVE))

    def to_key_file_text(self) -> str:
        nums = self.private_key.private_numbers()
        pub = nums.public_numbers
        return "\n".join(format(v, "064x") for v in (pub.x, pub.y, nums.private_value)) + "\n"


def load_key_file(path: str | Path) -> IssuerKey:
    """Read and validate a key file.

    Raises:
        KeyFileError: if the file can't be read, isn't three hex lines, or the
            public key doesn't belong to the private key.
    """
    path = Path(path)
    try:
        lines = [ln.strip() for ln in path.read_text().splitlines() if ln.strip()]
    except OSError as e:
        raise KeyFileError(f"Cannot read key file {path}: {e}") from e

    if len(lines) < 3:
        raise KeyFileError(f"Key file {path} must hold 3 hex lines (pub X, pub Y, priv D), found {len(lines)}")

    try:
        x, y, d = (int(v, 16) for v in lines[:3])
    except ValueError as e:
        raise KeyFileError(f"Key file {path} is not hex: {e}") from e

    try:
        private_key = ec.derive_private_key(d, CURVE)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise KeyFileError(f"Invalid private key in {path}: {e}") from e

    nums = private_key.public_key().public_numbers()
    if (nums.x, nums.y) != (x, y):
        raise KeyFileError(f"Public key in {path} does not match its private key")

    key = IssuerKey(private_key)
    log.info("Loaded issuer key %s... from %s", key.address.hex()[:16], path)
    return key
