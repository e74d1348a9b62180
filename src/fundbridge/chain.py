"""Client for the Bazo light client REST API.

Responses look like ``{"code": 200, "message": "", "content": [{"name": ..., "detail": ...}]}``.
"""

import logging
from typing import Any

import httpx

import fundbridge.constants as C
from fundbridge.errors import ChainUnavailable, SubmissionRejected
from fundbridge.models import AccountCreateTx, Address, ChainAccount, FundsTransferTx, SignedTransaction, UnsignedTx, short

log = logging.getLogger("fundbridge.chain")


def _content_detail(body: dict[str, Any], name: str | None = None) -> Any:
    for item in body.get("content") or []:
        if not isinstance(item, dict):
            continue
        if name is None or item.get("name") == name:
            return item.get("detail")
    return None


def _hash_from_hex(detail: Any) -> bytes:
    # The node drops leading zeros, so go through int to restore the fixed width
    try:
        return int(detail, 16).to_bytes(C.TX_HASH_LEN, "big")
    except (TypeError, ValueError, OverflowError) as e:
        raise ChainUnavailable(f"node returned an invalid tx hash {detail!r}: {e}") from e


class ChainClient:
    def __init__(self, base_url: str, *, timeout: float = C.CHAIN_TIMEOUT, http: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self.http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self.http.aclose()

    async def _call(self, method: str, path: str) -> dict[str, Any]:
        url = f"{self.base_url}/{path}"
        try:
            if method == "GET":
                r = await self.http.get(url)
            else:
                r = await self.http.post(url, json={})
            body = r.json()
        except httpx.HTTPError as e:
            raise ChainUnavailable(f"{method} {path.split('/')[0]} failed: {e.__class__.__name__}: {e}") from e
        except ValueError as e:
            raise ChainUnavailable(f"{method} {path.split('/')[0]} returned invalid JSON (HTTP {r.status_code})") from e
        if not isinstance(body, dict):
            raise ChainUnavailable(f"{method} {path.split('/')[0]} returned {type(body).__name__}, expected an object")
        return body

    async def fetch_account(self, address: Address) -> ChainAccount | None:
        """Look up an account. ``None`` means it has not been created yet.

        Raises:
            ChainUnavailable: on network or decode failure.
        """
        body = await self._call("GET", f"account/{address.hex()}")
        if body.get("code") != C.HTTP_OK:
            log.debug("Account %s not found (code=%s message=%r)", short(address), body.get("code"), body.get("message"))
            return None

        detail = _content_detail(body, "account")
        if not isinstance(detail, dict) or detail.get("isCreated") is False:
            return None
        try:
            return ChainAccount.from_detail(detail, address)
        except (TypeError, ValueError) as e:
            raise ChainUnavailable(f"account {short(address)} is malformed: {e}") from e

    async def create_tx(self, tx: UnsignedTx) -> bytes:
        """Have the node assemble ``tx`` and return the 32 byte hash to sign.

        Raises:
            SubmissionRejected: if the node answers with a non-200 code.
            ChainUnavailable: on network or decode failure.
        """
        match tx:
            case AccountCreateTx(target=target, issuer=issuer, fee=fee, header=header):
                path = f"createAccTx/{target.hex()}/{header}/{fee}/{issuer.hex()}"
            case FundsTransferTx(source=source, target=target, amount=amount, nonce=nonce, fee=fee, header=header):
                path = f"createFundsTx/{header}/{amount}/{fee}/{nonce}/{source.hex()}/{target.hex()}"
            case _:
                raise TypeError(f"unknown transaction {tx!r}")

        body = await self._call("POST", path)
        code = body.get("code")
        if code != C.HTTP_OK:
            raise SubmissionRejected(f"Could not create {tx.kind}: code={code} message={body.get('message')!r}", code=code)
        return _hash_from_hex(_content_detail(body))

    async def send_tx(self, signed: SignedTransaction) -> None:
        """Deliver a signed transaction.

        Raises:
            SubmissionRejected: if the node answers with a non-200 code.
            ChainUnavailable: on network or decode failure.
            ValueError: if the signature is not r||s of 64 bytes.
        """
        if len(signed.signature) != C.SIGNATURE_LEN:
            raise ValueError(f"signature must be {C.SIGNATURE_LEN} bytes, got {len(signed.signature)}")
        match signed.kind:
            case C.TxKind.ACCOUNT_CREATE:
                endpoint = "sendAccTx"
            case C.TxKind.FUNDS_TRANSFER:
                endpoint = "sendFundsTx"
            case _:
                raise TypeError(f"unknown transaction kind {signed.kind!r}")

        body = await self._call("POST", f"{endpoint}/{signed.hash.hex()}/{signed.signature.hex()}")
        code = body.get("code")
        if code != C.HTTP_OK:
            raise SubmissionRejected(f"Could not send {signed}: code={code} message={body.get('message')!r}", code=code)
        log.debug("Sent %s", signed)
