"""Client for the CARMA request service."""

import logging
from typing import Any

import httpx

import fundbridge.constants as C
from fundbridge.errors import MalformedCandidate, RequestServiceUnavailable, StatusUpdateFailed
from fundbridge.models import FundingRequest, decode_public_key

log = logging.getLogger("fundbridge.gateway")


class RequestGateway:
    """Reads candidates from and pushes status transitions to the request service.

    Every response is an envelope ``{"status": "OK" | ..., "notices": ..., "response": ...}``.
    """

    def __init__(self, base_url: str, app_id: str, *, timeout: float = C.REQUEST_TIMEOUT, http: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self.app_id = app_id
        self.http = http or httpx.AsyncClient(timeout=timeout)
        # Ids already reported as malformed, so each is only warned about once
        self._dropped: set[int] = set()

    async def aclose(self) -> None:
        await self.http.aclose()

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/{path}"
        try:
            r = await self.http.get(url, params=params)
            r.raise_for_status()
            body = r.json()
        except httpx.HTTPError as e:
            raise RequestServiceUnavailable(f"GET {path} failed: {e.__class__.__name__}: {e}") from e
        except ValueError as e:
            raise RequestServiceUnavailable(f"GET {path} returned invalid JSON: {e}") from e
        if not isinstance(body, dict):
            raise RequestServiceUnavailable(f"GET {path} returned {type(body).__name__}, expected an object")
        return body

    async def fetch_summary(self, filter_status: C.RequestStatus) -> list[FundingRequest]:
        """Return requests in ``filter_status`` with a well-formed public key.

        A non-OK envelope means no candidates this cycle, not an error.

        Raises:
            RequestServiceUnavailable: on network or decode failure.
        """
        body = await self._get("summary", {"app_id": self.app_id})
        if body.get("status") != C.OK:
            log.warning("Summary returned status %r, treating as no candidates", body.get("status"))
            return []

        entries = body.get("response") or []
        if not isinstance(entries, list):
            raise RequestServiceUnavailable(f"summary response is {type(entries).__name__}, expected a list")

        candidates = []
        for entry in entries:
            try:
                req = FundingRequest.from_dict(entry)
            except (KeyError, TypeError, ValueError) as e:
                log.warning("Skipping unparseable summary entry %r: %s", entry, e)
                continue
            if req.status != filter_status:
                continue
            try:
                decode_public_key(req.public_key, req.id)
            except MalformedCandidate as e:
                self._report_malformed(e)
                continue
            candidates.append(req)

        log.debug("Summary: %s %s candidates out of %s entries", len(candidates), filter_status, len(entries))
        return candidates

    def _report_malformed(self, e: MalformedCandidate) -> None:
        if e.request_id in self._dropped:
            log.debug("Still dropping malformed %s", e)
            return
        self._dropped.add(e.request_id)
        log.warning("Dropping malformed candidate permanently: %s", e)

    async def fetch_status(self, request_id: int) -> FundingRequest:
        """Fetch the authoritative detail of one request.

        Raises:
            RequestServiceUnavailable: on network/decode failure or a non-OK envelope.
        """
        body = await self._get("request_status", {"id": request_id, "app_id": self.app_id})
        if body.get("status") != C.OK:
            raise RequestServiceUnavailable(f"request_status for {request_id} returned status {body.get('status')!r}")
        detail = body.get("response")
        if not isinstance(detail, dict):
            raise RequestServiceUnavailable(f"request_status for {request_id} carried no request")
        try:
            return FundingRequest.from_dict({"id": request_id, **detail})
        except (KeyError, TypeError, ValueError) as e:
            raise RequestServiceUnavailable(f"request_status for {request_id} is malformed: {e}") from e

    async def push_status(self, request_id: int, status: C.RequestStatus) -> None:
        """Set a request's status. The service treats a repeated push as a no-op.

        Raises:
            StatusUpdateFailed: on network failure or a non-OK envelope.
        """
        payload = {"id": request_id, "app_id": self.app_id, "status": str(status)}
        try:
            r = await self.http.post(f"{self.base_url}/update_request", json=payload)
            r.raise_for_status()
            body = r.json()
        except httpx.HTTPError as e:
            raise StatusUpdateFailed(request_id, status, f"{e.__class__.__name__}: {e}") from e
        except ValueError as e:
            raise StatusUpdateFailed(request_id, status, f"invalid JSON: {e}") from e

        if not isinstance(body, dict) or body.get("status") != C.OK:
            got = body.get("status") if isinstance(body, dict) else body
            raise StatusUpdateFailed(request_id, status, f"service answered {got!r}")
        log.info("Request %s -> %s", request_id, status)
