import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, Query
from pydantic import BaseModel

import fundbridge.constants as C
from fundbridge.chain import ChainClient
from fundbridge.engine import Reconciler, start_loops
from fundbridge.errors import ChainUnavailable
from fundbridge.gateway import RequestGateway
from fundbridge.journal import open_journal
from fundbridge.keys import IssuerKey
from fundbridge.submitter import build_submitter

log = logging.getLogger("fundbridge.app")


def build_engine(cfg: dict[str, Any], key: IssuerKey) -> Reconciler:
    rs, ch, eng = cfg["request_service"], cfg["chain"], cfg["engine"]
    gateway = RequestGateway(rs["base_url"], rs["app_id"], timeout=rs["timeout"])
    chain = ChainClient(ch["base_url"], timeout=ch["timeout"])
    return Reconciler(
        gateway,
        chain,
        build_submitter(cfg, chain, key),
        key.address,
        journal=open_journal(cfg["journal"]["path"]),
        fee=ch["fee"],
        header=ch["header"],
        resubmit_after=eng["resubmit_after"],
    )


async def probe_chain(engine: Reconciler, max_retries: int = 5, retry_delay: float = 2.0) -> bool:
    """Check the light client answers and the issuer account exists.

    Never fatal: the loops retry on their own, this only makes a bad setup
    visible in the log early.
    """
    for attempt in range(1, max_retries + 1):
        try:
            acc = await engine.chain.fetch_account(engine.issuer)
        except ChainUnavailable as e:
            if attempt < max_retries:
                log.info(f"Chain not ready yet (attempt {attempt}/{max_retries}): {e.__class__.__name__} - retrying in {retry_delay}s...")
                await asyncio.sleep(retry_delay)
                continue
            log.error(f"Chain did not answer after {max_retries} attempts, starting loops anyway")
            return False
        if acc is None:
            log.warning("Issuer account %s... does not exist on chain, transfers will fail", engine.issuer.hex()[:16])
        else:
            log.info("Issuer account %s... tx_count=%s balance=%s", engine.issuer.hex()[:16], acc.tx_count, acc.balance)
        return True
    return False


async def close_engine(engine: Reconciler) -> None:
    await engine.gateway.aclose()
    await engine.chain.aclose()


class SummaryResp(BaseModel):
    issuer: str
    open_account_requests: dict[int, str]
    open_funds_requests: dict[int, str]
    queued_reroutes: int
    loops: dict[str, dict[str, Any]]


class JournalEntry(BaseModel):
    request_id: int
    kind: str
    tx_hash: str
    target: str
    amount: int
    nonce: int | None = None
    submitted_at: float
    acknowledged: bool


def create_app(cfg: dict[str, Any], engine: Reconciler, *, run_loops: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop = asyncio.Event()
        app.state.stop = stop

        if not run_loops:
            yield
            return

        await probe_chain(engine)
        async with asyncio.TaskGroup() as tg:
            tasks = start_loops(tg, engine, stop, cfg["engine"])
            log.info("Background tasks started: %s", ", ".join(t.get_name() for t in tasks))
            try:
                yield
            finally:
                # Let in-flight cycles finish so nothing is left submitted but unacknowledged
                log.info("Shutting down...")
                stop.set()
                done, pending = await asyncio.wait(tasks, timeout=C.SHUTDOWN_GRACE)
                if pending:
                    log.warning("%s loops still busy after %ss, cancelling", len(pending), C.SHUTDOWN_GRACE)
                    for t in pending:
                        t.cancel()
        await close_engine(engine)
        log.info("Shutdown complete")

    app = FastAPI(
        title="fundbridge",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "State", "description": "Reconciler working sets and submissions"},
        ],
    )
    app.state.engine = engine

    r_state = APIRouter(prefix="/state", tags=["State"])

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @r_state.get("/summary", response_model=SummaryResp)
    async def state_summary():
        return app.state.engine.snapshot()

    @r_state.get("/journal", response_model=list[JournalEntry])
    async def state_journal(limit: int = Query(50, ge=1, le=1000)):
        subs = await app.state.engine.journal.recent(limit)
        return [
            JournalEntry(
                request_id=s.request_id,
                kind=str(s.kind),
                tx_hash=s.tx_hash,
                target=s.target,
                amount=s.amount,
                nonce=s.nonce,
                submitted_at=s.submitted_at,
                acknowledged=s.acknowledged,
            )
            for s in subs
        ]

    app.include_router(r_state)
    return app
