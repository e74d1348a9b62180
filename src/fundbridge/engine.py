"""Reconciliation of funding requests with chain state.

Two loops share one ``Reconciler``:

- the account loop takes ``open`` requests, creates the missing account and
  moves the request to ``pending``;
- the funds loop takes ``fundprocessed`` requests, transfers the amount into an
  existing account and moves the request to ``processed``. Requests whose
  account is missing go back to ``open`` and are handed to the account loop
  through ``Reconciler.reroutes``.

Each working set is only touched by its own loop. Within a cycle requests are
handled one at a time so issuer nonces go out in order.
"""

import asyncio
import contextlib
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable

import fundbridge.constants as C
from fundbridge.builder import NonceTracker, build_account_create, build_funds_transfer
from fundbridge.chain import ChainClient
from fundbridge.errors import (
    ChainUnavailable,
    FundBridgeError,
    MalformedCandidate,
    RequestServiceUnavailable,
    StatusUpdateFailed,
    SubmissionRejected,
)
from fundbridge.gateway import RequestGateway
from fundbridge.journal import InMemoryJournal, Journal
from fundbridge.models import Address, FundingRequest, Submission, short
from fundbridge.submitter import Submitter

log = logging.getLogger("fundbridge.engine")


@dataclass(slots=True)
class LoopStats:
    cycles: int = 0
    submitted: int = 0
    status_pushed: int = 0
    rerouted: int = 0
    failures: int = 0
    last_error: str | None = None
    last_cycle_at: float | None = None


class Reconciler:
    def __init__(
        self,
        gateway: RequestGateway,
        chain: ChainClient,
        submitter: Submitter,
        issuer: Address,
        *,
        journal: Journal | None = None,
        fee: int = C.DEFAULT_FEE,
        header: int = C.DEFAULT_HEADER,
        resubmit_after: float = C.RESUBMIT_AFTER,
    ):
        self.gateway = gateway
        self.chain = chain
        self.submitter = submitter
        self.issuer = issuer
        self.journal: Journal = journal or InMemoryJournal()
        self.fee = fee
        self.header = header
        self.resubmit_after = resubmit_after

        # Owned by the account loop
        self.open_account_requests: dict[int, Address] = {}
        # Owned by the funds loop
        self.open_funds_requests: dict[int, Address] = {}
        # funds loop -> account loop
        self.reroutes: asyncio.Queue[tuple[int, Address]] = asyncio.Queue()

        self.nonces = NonceTracker()
        self.stats = {"account": LoopStats(), "funds": LoopStats()}

    def _addresses(self, candidates: list[FundingRequest]) -> dict[int, Address]:
        out = {}
        for req in candidates:
            try:
                out[req.id] = req.address
            except (MalformedCandidate, ValueError) as e:
                log.warning("Request %s left out of the working set: %s", req.id, e)
        return out

    # ============================================== #
    # ============== Account creation ============== #
    # ============================================== #

    def _drain_reroutes(self) -> dict[int, Address]:
        rerouted = {}
        while True:
            try:
                request_id, address = self.reroutes.get_nowait()
            except asyncio.QueueEmpty:
                return rerouted
            rerouted[request_id] = address

    async def account_cycle(self) -> None:
        """One pass over the ``open`` requests.

        Raises:
            RequestServiceUnavailable: if the summary can't be fetched.
        """
        stats = self.stats["account"]
        stats.cycles += 1
        stats.last_cycle_at = time.time()

        rerouted = self._drain_reroutes()
        try:
            candidates = await self.gateway.fetch_summary(C.RequestStatus.OPEN)
        except RequestServiceUnavailable:
            for item in rerouted.items():
                self.reroutes.put_nowait(item)
            raise
        # Rebuild: whatever vanished upstream is forgotten
        self.open_account_requests = {**rerouted, **self._addresses(candidates)}
        if rerouted:
            log.info("Account loop picked up %s re-routed requests", len(rerouted))

        for request_id, address in list(self.open_account_requests.items()):
            try:
                await self._process_open(request_id, address)
            except StatusUpdateFailed as e:
                stats.failures += 1
                stats.last_error = str(e)
                log.warning("%s - will retry next cycle", e)
            except (ChainUnavailable, SubmissionRejected, RequestServiceUnavailable) as e:
                stats.failures += 1
                stats.last_error = str(e)
                log.warning("Account creation for request %s aborted: %s: %s", request_id, e.__class__.__name__, e)

    async def _process_open(self, request_id: int, address: Address) -> None:
        stats = self.stats["account"]
        acc = await self.chain.fetch_account(address)
        if acc is not None:
            log.info("Request %s: account %s already exists, nothing to submit", request_id, short(address))
        elif await self._already_submitted(request_id, C.TxKind.ACCOUNT_CREATE):
            log.info("Request %s: account creation already submitted, retrying status push only", request_id)
        else:
            tx = build_account_create(address, self.issuer, fee=self.fee, header=self.header)
            tx_hash = await self.submitter.submit(tx)
            stats.submitted += 1
            await self.journal.record(
                Submission(request_id=request_id, kind=tx.kind, tx_hash=tx_hash, target=address.hex())
            )
            log.info("Request %s: account creation for %s submitted (%s)", request_id, short(address), tx_hash[:16])

        await self._push(request_id, C.RequestStatus.PENDING, C.TxKind.ACCOUNT_CREATE)
        stats.status_pushed += 1
        self.open_account_requests.pop(request_id, None)

    # ============================================== #
    # ================ Funds transfer ============== #
    # ============================================== #

    async def funds_cycle(self) -> None:
        """One pass over the ``fundprocessed`` requests.

        Raises:
            RequestServiceUnavailable: if the summary can't be fetched.
        """
        stats = self.stats["funds"]
        stats.cycles += 1
        stats.last_cycle_at = time.time()
        await self.nonces.reset()

        candidates = await self.gateway.fetch_summary(C.RequestStatus.FUNDPROCESSED)
        self.open_funds_requests = self._addresses(candidates)

        for request_id, address in list(self.open_funds_requests.items()):
            try:
                await self._process_fundprocessed(request_id, address)
            except StatusUpdateFailed as e:
                stats.failures += 1
                stats.last_error = str(e)
                log.warning("%s - will retry next cycle", e)
            except (ChainUnavailable, SubmissionRejected, RequestServiceUnavailable) as e:
                stats.failures += 1
                stats.last_error = str(e)
                log.warning("Funds transfer for request %s aborted: %s: %s", request_id, e.__class__.__name__, e)

    async def _process_fundprocessed(self, request_id: int, address: Address) -> None:
        stats = self.stats["funds"]
        acc = await self.chain.fetch_account(address)
        if acc is None:
            # Never transfer into a missing account, send it back through creation
            await self._push(request_id, C.RequestStatus.OPEN)
            self.open_funds_requests.pop(request_id, None)
            await self.reroutes.put((request_id, address))
            stats.rerouted += 1
            log.info("Request %s: account %s missing, re-routed to account creation", request_id, short(address))
            return

        if await self._already_submitted(request_id, C.TxKind.FUNDS_TRANSFER):
            log.info("Request %s: transfer already submitted, retrying status push only", request_id)
        else:
            await self._transfer(request_id, address)
            stats.submitted += 1

        await self._push(request_id, C.RequestStatus.PROCESSED, C.TxKind.FUNDS_TRANSFER)
        stats.status_pushed += 1
        self.open_funds_requests.pop(request_id, None)

    async def _transfer(self, request_id: int, address: Address) -> None:
        # The summary may be stale or lack the amount
        detail = await self.gateway.fetch_status(request_id)
        if detail.amount <= 0:
            raise RequestServiceUnavailable(f"request {request_id} has no positive amount ({detail.amount})")

        # Re-read the issuer right before building so the nonce is current
        issuer_acc = await self.chain.fetch_account(self.issuer)
        if issuer_acc is None:
            raise ChainUnavailable(f"issuer account {short(self.issuer)} not found on chain")

        nonce = await self.nonces.allocate(issuer_acc.tx_count)
        tx = build_funds_transfer(issuer_acc, address, detail.amount, nonce=nonce, fee=self.fee, header=self.header)
        try:
            tx_hash = await self.submitter.submit(tx)
        except (SubmissionRejected, ChainUnavailable):
            await self.nonces.release(nonce)
            raise

        await self.journal.record(
            Submission(
                request_id=request_id,
                kind=tx.kind,
                tx_hash=tx_hash,
                target=address.hex(),
                amount=detail.amount,
                nonce=nonce,
            )
        )
        log.info(
            "Request %s: transferred %s to %s nonce=%s (%s)",
            request_id, detail.amount, short(address), nonce, tx_hash[:16],
        )

    # ============================================== #
    # =============== Shared helpers =============== #
    # ============================================== #

    async def _already_submitted(self, request_id: int, kind: C.TxKind) -> bool:
        prior = await self.journal.get(request_id, kind)
        if prior is None or prior.acknowledged:
            return False
        age = time.time() - prior.submitted_at
        if age < self.resubmit_after:
            return True
        if await self._nonce_consumed(prior):
            log.info(
                "Request %s: %s %s already included (issuer nonce %s used), not resubmitting",
                request_id, kind, prior.tx_hash[:16], prior.nonce,
            )
            return True
        log.warning(
            "Request %s: %s %s unacknowledged for %.0fs, allowing resubmission",
            request_id, kind, prior.tx_hash[:16], age,
        )
        return False

    async def _nonce_consumed(self, prior: Submission) -> bool:
        if prior.nonce is None:
            return False
        issuer_acc = await self.chain.fetch_account(self.issuer)
        return issuer_acc is not None and issuer_acc.tx_count > prior.nonce

    async def _push(self, request_id: int, status: C.RequestStatus, kind: C.TxKind | None = None) -> None:
        await self.gateway.push_status(request_id, status)
        if kind is not None:
            await self.journal.acknowledge(request_id, kind)

    def report_status(self) -> None:
        log.info("Status:")
        log.info("Open accounts (address): %s", len(self.open_account_requests))
        for request_id, address in self.open_account_requests.items():
            log.info("  %s %s", request_id, address.hex())
        log.info("Open funds (address): %s", len(self.open_funds_requests))
        for request_id, address in self.open_funds_requests.items():
            log.info("  %s %s", request_id, address.hex())

    def snapshot(self) -> dict[str, Any]:
        return {
            "issuer": self.issuer.hex(),
            "open_account_requests": {rid: a.hex() for rid, a in self.open_account_requests.items()},
            "open_funds_requests": {rid: a.hex() for rid, a in self.open_funds_requests.items()},
            "queued_reroutes": self.reroutes.qsize(),
            "loops": {name: asdict(s) for name, s in self.stats.items()},
        }


async def _sleep_or_stop(stop: asyncio.Event, interval: float) -> None:
    with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(stop.wait(), timeout=interval)


async def periodic(name: str, cycle: Callable[[], Awaitable[None]], stop: asyncio.Event, interval: float) -> None:
    """Run ``cycle`` every ``interval`` seconds until ``stop`` is set.

    A cycle in progress when ``stop`` is set runs to completion. No error from
    a cycle ends the loop.
    """
    log.info("[%s] loop starting (interval=%ss)", name, interval)
    while not stop.is_set():
        try:
            await cycle()
        except asyncio.CancelledError:
            raise
        except FundBridgeError as e:
            log.warning("[%s] cycle skipped: %s: %s", name, e.__class__.__name__, e)
        except Exception:
            log.exception("[%s] cycle failed; continuing", name)
        await _sleep_or_stop(stop, interval)
    log.info("[%s] loop stopped", name)


async def status_reporter(engine: Reconciler, stop: asyncio.Event, interval: float = C.STATUS_INTERVAL) -> None:
    async def report() -> None:
        engine.report_status()

    await periodic("status", report, stop, interval)


def start_loops(tg: asyncio.TaskGroup, engine: Reconciler, stop: asyncio.Event, engine_cfg: dict[str, Any]) -> list[asyncio.Task]:
    return [
        tg.create_task(
            status_reporter(engine, stop, engine_cfg.get("status_interval", C.STATUS_INTERVAL)),
            name="status_reporter",
        ),
        tg.create_task(
            periodic("account", engine.account_cycle, stop, engine_cfg.get("account_interval", C.CYCLE_INTERVAL)),
            name="account_loop",
        ),
        tg.create_task(
            periodic("funds", engine.funds_cycle, stop, engine_cfg.get("funds_interval", C.CYCLE_INTERVAL)),
            name="funds_loop",
        ),
    ]
