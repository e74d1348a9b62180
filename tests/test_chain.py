import httpx
import pytest

from conftest import CHAIN_URL
from fundbridge.builder import build_account_create, build_funds_transfer
from fundbridge.chain import ChainClient
from fundbridge.constants import TxKind
from fundbridge.errors import ChainUnavailable, SubmissionRejected
from fundbridge.models import ChainAccount, SignedTransaction

ADDR = bytes(range(64))
ISSUER = bytes(reversed(range(64)))


def client_for(handler) -> ChainClient:
    return ChainClient(CHAIN_URL, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
async def test_fetch_account_found(chain, node):
    node.add_account(ADDR.hex(), tx_count=3, balance=99)

    acc = await chain.fetch_account(ADDR)

    assert acc == ChainAccount(address=ADDR, tx_count=3, balance=99)


@pytest.mark.asyncio
async def test_fetch_account_not_found(chain):
    assert await chain.fetch_account(ADDR) is None


@pytest.mark.asyncio
async def test_fetch_account_not_created_is_not_found():
    def handler(request):
        detail = {"address": ADDR.hex(), "txCnt": 0, "balance": 0, "isCreated": False}
        return httpx.Response(200, json={"code": 200, "content": [{"name": "account", "detail": detail}]})

    assert await client_for(handler).fetch_account(ADDR) is None


@pytest.mark.asyncio
async def test_fetch_account_unreachable(chain, node):
    node.down = True

    with pytest.raises(ChainUnavailable):
        await chain.fetch_account(ADDR)


@pytest.mark.asyncio
async def test_fetch_account_garbage_body():
    with pytest.raises(ChainUnavailable):
        await client_for(lambda request: httpx.Response(200, text="nope")).fetch_account(ADDR)


@pytest.mark.asyncio
async def test_create_account_tx_path():
    seen = []

    def handler(request):
        seen.append(request.url.path)
        return httpx.Response(200, json={"code": 200, "content": [{"detail": "ab" * 31}]})

    tx_hash = await client_for(handler).create_tx(build_account_create(ADDR, ISSUER, fee=1))

    assert seen == [f"/createAccTx/{ADDR.hex()}/0/1/{ISSUER.hex()}"]
    # leading zero byte restored
    assert tx_hash == b"\x00" + bytes.fromhex("ab" * 31)


@pytest.mark.asyncio
async def test_create_funds_tx_path():
    seen = []

    def handler(request):
        seen.append(request.url.path)
        return httpx.Response(200, json={"code": 200, "content": [{"detail": "11" * 32}]})

    source = ChainAccount(address=ISSUER, tx_count=4)
    await client_for(handler).create_tx(build_funds_transfer(source, ADDR, 50))

    assert seen == [f"/createFundsTx/0/50/1/4/{ISSUER.hex()}/{ADDR.hex()}"]


@pytest.mark.asyncio
async def test_create_tx_rejected():
    def handler(request):
        return httpx.Response(500, json={"code": 500, "message": "no such issuer"})

    with pytest.raises(SubmissionRejected) as exc:
        await client_for(handler).create_tx(build_account_create(ADDR, ISSUER))

    assert exc.value.code == 500


@pytest.mark.asyncio
@pytest.mark.parametrize("kind, endpoint", [(TxKind.ACCOUNT_CREATE, "sendAccTx"), (TxKind.FUNDS_TRANSFER, "sendFundsTx")])
async def test_send_tx_endpoint_by_kind(kind, endpoint):
    seen = []

    def handler(request):
        seen.append(request.url.path)
        return httpx.Response(200, json={"code": 200})

    signed = SignedTransaction(hash=b"\x01" * 32, signature=b"\x02" * 64, kind=kind)
    await client_for(handler).send_tx(signed)

    assert seen == [f"/{endpoint}/{'01' * 32}/{'02' * 64}"]


@pytest.mark.asyncio
async def test_send_tx_rejected():
    signed = SignedTransaction(hash=b"\x01" * 32, signature=b"\x02" * 64, kind=TxKind.FUNDS_TRANSFER)

    with pytest.raises(SubmissionRejected):
        await client_for(lambda request: httpx.Response(200, json={"code": 400})).send_tx(signed)


@pytest.mark.asyncio
async def test_send_tx_refuses_short_signature():
    seen = []

    def handler(request):
        seen.append(request.url.path)
        return httpx.Response(200, json={"code": 200})

    signed = SignedTransaction(hash=b"\x01" * 32, signature=b"\x02" * 63, kind=TxKind.FUNDS_TRANSFER)

    with pytest.raises(ValueError):
        await client_for(handler).send_tx(signed)
    assert seen == []
