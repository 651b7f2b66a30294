from __future__ import annotations

import json
import logging
import socket
from dataclasses import dataclass
from typing import Any, Protocol
from urllib import error, parse, request

from pydantic import ValidationError

from market_agent.errors import TransportError
from market_agent.schemas import Bid, Job, JobDetail, Message

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 30.0
# Reported in place of a 2xx whose body does not fit the expected model.
MALFORMED_BODY_STATUS = 502


@dataclass(frozen=True)
class ApiResponse:
    status: int
    data: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def conflict(self) -> bool:
        return self.status == 409


class Marketplace(Protocol):
    """Typed view of the marketplace endpoints the agent uses."""

    def list_open_jobs(self, **filters: Any) -> ApiResponse: ...

    def list_my_bids(self, limit: int = ...) -> ApiResponse: ...

    def place_bid(
        self, job_id: str, *, amount: float, eta_seconds: int, proposal: str
    ) -> ApiResponse: ...

    def get_job_detail(self, job_id: str) -> ApiResponse: ...

    def send_assignment_message(self, assignment_id: str, body: str) -> ApiResponse: ...

    def get_assignment_messages(self, assignment_id: str) -> ApiResponse: ...

    def submit_deliverable(self, job_id: str, *, url: str, hash: str) -> ApiResponse: ...

    def get_wallet_balance(self) -> ApiResponse: ...


def extract_items(data: Any, key: str) -> list[Any]:
    """Accept both a bare JSON array and an object wrapping the array under `key`."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        items = data.get(key)
        if isinstance(items, list):
            return items
    return []


def _parse_many(model: Any, items: list[Any]) -> list[Any]:
    out: list[Any] = []
    for raw in items:
        if not isinstance(raw, dict):
            continue
        try:
            out.append(model.model_validate(raw))
        except ValidationError as e:
            logger.warning("dropping malformed %s record: %s", model.__name__, e.errors()[:1])
    return out


def _decode_body(raw: bytes) -> Any:
    text = raw.decode("utf-8", errors="replace")
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class MarketplaceClient:
    def __init__(self, *, base_url: str, api_key: str, timeout: float = DEFAULT_TIMEOUT_SEC) -> None:
        self._base_url = str(base_url).rstrip("/")
        self._api_key = api_key
        self._timeout = float(timeout)

    @property
    def base_url(self) -> str:
        return self._base_url

    def request(self, method: str, path: str, body: dict[str, Any] | None = None) -> ApiResponse:
        url = f"{self._base_url}{path}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = request.Request(
            url,
            data=data,
            method=method,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self._timeout) as resp:
                status = int(resp.status)
                raw = resp.read()
        except error.HTTPError as e:
            status = int(e.code)
            raw = e.read() or b""
        except (error.URLError, TimeoutError, socket.timeout, ConnectionError) as e:
            raise TransportError(f"{method} {path} failed: {e}", method=method, url=url) from e

        logger.debug("%s %s -> %s", method, path, status)
        return ApiResponse(status=status, data=_decode_body(raw))

    def list_open_jobs(self, **filters: Any) -> ApiResponse:
        params = {
            "status": "open",
            "job_type": "standard",
            "limit": 100,
            "sort": "created_at",
            "order": "desc",
        }
        params.update({k: v for k, v in filters.items() if v is not None})
        res = self.request("GET", f"/jobs?{parse.urlencode(params)}")
        if not res.ok:
            return res
        return ApiResponse(res.status, _parse_many(Job, extract_items(res.data, "jobs")))

    def list_my_bids(self, limit: int = 1000) -> ApiResponse:
        res = self.request("GET", f"/agents/me/bids?limit={int(limit)}")
        if not res.ok:
            return res
        return ApiResponse(res.status, _parse_many(Bid, extract_items(res.data, "bids")))

    def place_bid(
        self, job_id: str, *, amount: float, eta_seconds: int, proposal: str
    ) -> ApiResponse:
        return self.request(
            "POST",
            f"/jobs/{parse.quote(job_id, safe='')}/bids",
            {"amount": amount, "eta_seconds": eta_seconds, "proposal": proposal},
        )

    def get_job_detail(self, job_id: str) -> ApiResponse:
        res = self.request("GET", f"/jobs/{parse.quote(job_id, safe='')}")
        if not res.ok or not isinstance(res.data, dict):
            return res
        payload = dict(res.data)
        payload.setdefault("job_id", job_id)
        try:
            detail = JobDetail.model_validate(payload)
        except ValidationError as e:
            logger.warning("malformed detail for job %s: %s", job_id, e.errors()[:1])
            return ApiResponse(MALFORMED_BODY_STATUS, {"error": "malformed job detail", "raw": res.data})
        return ApiResponse(res.status, detail)

    def send_assignment_message(self, assignment_id: str, body: str) -> ApiResponse:
        return self.request(
            "POST", f"/assignments/{parse.quote(assignment_id, safe='')}/messages", {"body": body}
        )

    def get_assignment_messages(self, assignment_id: str) -> ApiResponse:
        res = self.request("GET", f"/assignments/{parse.quote(assignment_id, safe='')}/messages")
        if not res.ok:
            return res
        return ApiResponse(res.status, _parse_many(Message, extract_items(res.data, "messages")))

    def submit_deliverable(self, job_id: str, *, url: str, hash: str) -> ApiResponse:
        return self.request(
            "POST",
            f"/jobs/{parse.quote(job_id, safe='')}/submit",
            {"deliverable_url": url, "deliverable_hash": hash},
        )

    def get_wallet_balance(self) -> ApiResponse:
        return self.request("GET", "/wallet/balance")
