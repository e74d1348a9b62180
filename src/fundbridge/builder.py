"""Construction of unsigned transactions and issuer nonce tracking."""

import asyncio
import logging

import fundbridge.constants as C
from fundbridge.models import AccountCreateTx, Address, ChainAccount, FundsTransferTx

log = logging.getLogger("fundbridge.builder")


def build_account_create(target: Address, issuer: Address, *, fee: int = C.DEFAULT_FEE, header: int = C.DEFAULT_HEADER) -> AccountCreateTx:
    """Zero-value creation of ``target``, paid for and signed by ``issuer``."""
    return AccountCreateTx(target=target, issuer=issuer, fee=fee, header=header)


def build_funds_transfer(
    source: ChainAccount,
    target: Address,
    amount: int,
    *,
    nonce: int | None = None,
    fee: int = C.DEFAULT_FEE,
    header: int = C.DEFAULT_HEADER,
) -> FundsTransferTx:
    """Transfer ``amount`` from ``source`` to ``target``.

    ``source`` must have been fetched right before this call. ``nonce`` defaults
    to ``source.tx_count``; pass the value from ``NonceTracker.allocate`` when
    several transfers go out in one cycle.
    """
    if amount <= 0:
        raise ValueError(f"transfer amount must be positive, got {amount}")
    return FundsTransferTx(
        source=source.address,
        target=target,
        amount=amount,
        nonce=source.tx_count if nonce is None else nonce,
        fee=fee,
        header=header,
    )


class NonceTracker:
    """Hands out strictly increasing nonces for the issuer within one cycle.

    The chain's ``tx_count`` lags behind transfers that were accepted but not
    yet included in a block, so the larger of the observed count and the
    locally tracked next value wins.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._next: int | None = None

    async def allocate(self, observed: int) -> int:
        async with self._lock:
            nonce = observed if self._next is None else max(observed, self._next)
            self._next = nonce + 1
            return nonce

    async def release(self, nonce: int) -> None:
        """Give back a nonce whose transaction never reached the chain."""
        async with self._lock:
            # Only rollback if this was the most recently allocated nonce
            if self._next == nonce + 1:
                self._next = nonce
                log.debug(f"Released nonce {nonce}")
            else:
                log.warning(f"Cannot release nonce {nonce} - next is {self._next} (gap would be created)")

    async def reset(self) -> None:
        async with self._lock:
            self._next = None
