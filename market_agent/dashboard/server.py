"""Read-only HTTP dashboard over the agent's data directory.

Serves `static/index.html` plus two JSON endpoints:

- `GET /api/state`: the saved config and state, with a derived `summary` block.
- `GET /api/events?limit=N&job=ID`: the newest journal events, oldest first.

Nothing here writes to the data directory, so it is safe to run next to a live agent.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlsplit

from market_agent.errors import MarketAgentError
from market_agent.ledger import EventJournal
from market_agent.schemas import AgentState
from market_agent.store import JsonStateStore

logger = logging.getLogger(__name__)

DEFAULT_EVENTS = 100
MAX_EVENTS = 1000
STATIC_DIR = Path(__file__).parent / "static"


def summarize(state: AgentState) -> dict[str, Any]:
    decided = state.bids_won + state.bids_rejected
    return {
        "pending": len(state.pending_bids),
        "active": len(state.active_jobs),
        "delivered": len(state.delivered_jobs),
        "paid": len(state.paid_jobs),
        "win_rate": round(state.bids_won / decided, 3) if decided else None,
        "awaiting_payment": round(sum(j.amount for j in state.delivered_jobs), 2),
    }


def _int_param(query: dict[str, list[str]], name: str, default: int) -> int:
    raw = (query.get(name) or [""])[0]
    try:
        value = int(raw) if raw else default
    except ValueError:
        return default
    return max(0, min(value, MAX_EVENTS))


class DashboardHandler(SimpleHTTPRequestHandler):
    store: JsonStateStore
    static_dir: Path = STATIC_DIR

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, directory=str(self.static_dir), **kwargs)

    def _routes(self) -> dict[str, Callable[[dict[str, list[str]]], Any]]:
        return {"/api/state": self._state, "/api/events": self._events}

    def do_GET(self) -> None:
        url = urlsplit(self.path)
        route = self._routes().get(url.path)
        if route is None:
            if url.path == "/":
                self.path = "/index.html"
            super().do_GET()
            return
        try:
            payload = route(parse_qs(url.query))
        except (OSError, ValueError, MarketAgentError) as e:
            logger.warning("dashboard %s failed: %s", url.path, e)
            self._send_json({"error": str(e)}, status=500)
            return
        self._send_json(payload)

    def _state(self, _query: dict[str, list[str]]) -> dict[str, Any]:
        state = self.store.load_state()
        return {
            "config": self.store.load_config().model_dump(mode="json"),
            "state": state.model_dump(mode="json"),
            "summary": summarize(state),
        }

    def _events(self, query: dict[str, list[str]]) -> list[dict[str, Any]]:
        limit = _int_param(query, "limit", DEFAULT_EVENTS)
        if limit == 0:
            return []
        journal = EventJournal(self.store.events_path, read_only=True)
        job_id = (query.get("job") or [""])[0]
        events = journal.for_job(job_id)[-limit:] if job_id else journal.tail(limit)
        return [e.model_dump(mode="json") for e in events]

    def _send_json(self, data: Any, status: int = 200) -> None:
        body = json.dumps(data, default=str).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store")
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args) -> None:
        logger.debug("dashboard: " + format, *args)


def create_handler_class(*, store: JsonStateStore, static_dir: Path = STATIC_DIR) -> type[DashboardHandler]:
    return type("BoundDashboardHandler", (DashboardHandler,), {"store": store, "static_dir": static_dir})


def run_dashboard(*, store: JsonStateStore, port: int = 18800, open_browser: bool = True) -> None:
    if not (STATIC_DIR / "index.html").exists():
        raise FileNotFoundError(f"dashboard page missing: {STATIC_DIR / 'index.html'}")

    server = ThreadingHTTPServer(("127.0.0.1", port), create_handler_class(store=store))
    url = f"http://127.0.0.1:{server.server_address[1]}"
    logger.info("dashboard at %s reading %s", url, store.data_dir)
    print(f"Dashboard: {url}  (Ctrl+C to stop)")

    if open_browser:
        import webbrowser

        threading.Timer(1.0, webbrowser.open, args=(url,)).start()

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
