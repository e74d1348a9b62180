"""Fakes of the request service and the Bazo light client served over httpx.MockTransport."""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, encode_dss_signature

from fundbridge.chain import ChainClient
from fundbridge.engine import Reconciler
from fundbridge.gateway import RequestGateway
from fundbridge.journal import InMemoryJournal
from fundbridge.keys import IssuerKey
from fundbridge.submitter import LocalSigningSubmitter

APP_ID = "test-app"
SERVICE_URL = "http://carma.test/bazo"
CHAIN_URL = "http://bazo.test"


def new_public_key_hex() -> str:
    return IssuerKey.generate().public_key_bytes.hex()


class FakeRequestService:
    """Holds requests by id and answers summary/request_status/update_request."""

    def __init__(self) -> None:
        self.requests: dict[int, dict[str, Any]] = {}
        self.pushes: list[tuple[int, str]] = []
        self.fail_pushes = False
        self.fail_summary = False
        self.summary_status = "OK"

    def add(self, id: int, status: str, public_key: str | None = None, amount: int = 0) -> dict:
        entry = {
            "id": id,
            "user_id": 100 + id,
            "public_key": new_public_key_hex() if public_key is None else public_key,
            "amount": amount,
            "status": status,
            "app_id": APP_ID,
        }
        self.requests[id] = entry
        return entry

    def status_of(self, id: int) -> str:
        return self.requests[id]["status"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.rsplit("/", 1)[-1]
        if path == "summary":
            if self.fail_summary:
                raise httpx.ConnectError("service down", request=request)
            assert request.url.params["app_id"] == APP_ID
            return httpx.Response(200, json={"status": self.summary_status, "notices": None, "response": list(self.requests.values())})
        if path == "request_status":
            entry = self.requests.get(int(request.url.params["id"]))
            if entry is None:
                return httpx.Response(200, json={"status": "ERROR", "response": None})
            return httpx.Response(200, json={"status": "OK", "response": entry})
        if path == "update_request":
            if self.fail_pushes:
                raise httpx.ConnectError("service down", request=request)
            body = json.loads(request.content)
            assert body["app_id"] == APP_ID
            self.pushes.append((body["id"], body["status"]))
            if body["id"] in self.requests:
                self.requests[body["id"]]["status"] = body["status"]
            return httpx.Response(200, json={"status": "OK"})
        return httpx.Response(404)


@dataclass
class FakeChainNode:
    """Bazo light client: accounts keyed by hex address, txs prepared then signed."""

    issuer_key: IssuerKey
    accounts: dict[str, dict[str, Any]] = field(default_factory=dict)
    prepared: dict[str, dict[str, Any]] = field(default_factory=dict)
    sent: list[dict[str, Any]] = field(default_factory=list)
    reject_send: bool = False
    down: bool = False
    # Bazo only bumps txCnt once a block includes the tx
    apply_tx_count: bool = False

    def add_account(self, address_hex: str, tx_count: int = 0, balance: int = 0) -> None:
        self.accounts[address_hex] = {"address": address_hex, "txCnt": tx_count, "balance": balance, "isCreated": True}

    def _verify(self, tx_hash: bytes, sig: bytes) -> bool:
        r, s = int.from_bytes(sig[:32], "big"), int.from_bytes(sig[32:], "big")
        try:
            self.issuer_key.private_key.public_key().verify(
                encode_dss_signature(r, s), tx_hash, ec.ECDSA(Prehashed(hashes.SHA256()))
            )
        except InvalidSignature:
            return False
        return True

    def _prepare(self, tx: dict[str, Any], path: str) -> httpx.Response:
        tx_hash = hashlib.sha256(path.encode()).hexdigest()
        self.prepared[tx_hash] = tx
        return httpx.Response(200, json={"code": 200, "content": [{"name": "TxHash", "detail": tx_hash}]})

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("node down", request=request)
        parts = request.url.path.strip("/").split("/")
        match parts:
            case ["account", address]:
                acc = self.accounts.get(address)
                if acc is None:
                    return httpx.Response(500, json={"code": 500, "message": "Account does not exist."})
                return httpx.Response(200, json={"code": 200, "content": [{"name": "account", "detail": acc}]})
            case ["createAccTx", address, header, fee, issuer]:
                return self._prepare({"kind": "acc", "address": address, "fee": int(fee), "issuer": issuer}, request.url.path)
            case ["createFundsTx", header, amount, fee, txcnt, src, dst]:
                tx = {"kind": "funds", "amount": int(amount), "fee": int(fee), "nonce": int(txcnt), "from": src, "to": dst}
                return self._prepare(tx, request.url.path)
            case ["sendAccTx" | "sendFundsTx" as endpoint, tx_hash, sig]:
                if self.reject_send:
                    return httpx.Response(500, json={"code": 500, "message": "rejected"})
                tx = self.prepared.pop(tx_hash, None)
                if tx is None or not self._verify(bytes.fromhex(tx_hash), bytes.fromhex(sig)):
                    return httpx.Response(400, json={"code": 400, "message": "bad signature"})
                assert (endpoint == "sendAccTx") == (tx["kind"] == "acc")
                self.sent.append(tx)
                if tx["kind"] == "acc":
                    self.add_account(tx["address"])
                elif self.apply_tx_count:
                    self.accounts[tx["from"]]["txCnt"] += 1
                return httpx.Response(200, json={"code": 200})
        return httpx.Response(404, json={"code": 404})

    def sent_of(self, kind: str) -> list[dict[str, Any]]:
        return [tx for tx in self.sent if tx["kind"] == kind]


@pytest.fixture
def issuer_key() -> IssuerKey:
    return IssuerKey.generate()


@pytest.fixture
def service() -> FakeRequestService:
    return FakeRequestService()


@pytest.fixture
def node(issuer_key) -> FakeChainNode:
    n = FakeChainNode(issuer_key)
    n.add_account(issuer_key.address.hex(), tx_count=7, balance=1_000_000)
    return n


@pytest.fixture
def gateway(service) -> RequestGateway:
    return RequestGateway(SERVICE_URL, APP_ID, http=httpx.AsyncClient(transport=httpx.MockTransport(service.handler)))


@pytest.fixture
def chain(node) -> ChainClient:
    return ChainClient(CHAIN_URL, http=httpx.AsyncClient(transport=httpx.MockTransport(node.handler)))


@pytest.fixture
def engine(gateway, chain, issuer_key) -> Reconciler:
    return Reconciler(
        gateway,
        chain,
        LocalSigningSubmitter(chain, issuer_key),
        issuer_key.address,
        journal=InMemoryJournal(),
    )
