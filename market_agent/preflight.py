from __future__ import annotations

import logging
import socket
from typing import Protocol
from urllib import error, parse, request

logger = logging.getLogger(__name__)

PREFLIGHT_TIMEOUT_SEC = 10.0


class Preflight(Protocol):
    def verify(self, url: str) -> bool: ...


class PreflightVerifier:
    """Confirms a deliverable URL is publicly reachable before it is submitted."""

    def __init__(self, *, timeout: float = PREFLIGHT_TIMEOUT_SEC) -> None:
        self._timeout = timeout

    def verify(self, url: str) -> bool:
        parsed = parse.urlparse(url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            logger.warning("pre-flight: not a public http(s) URL: %r", url)
            return False

        req = request.Request(url, method="HEAD", headers={"User-Agent": "market-agent"})
        try:
            with request.urlopen(req, timeout=self._timeout) as resp:
                status = int(resp.status)
        except error.HTTPError as e:
            status = int(e.code)
        except (error.URLError, TimeoutError, socket.timeout, ConnectionError, ValueError) as e:
            logger.warning("pre-flight check for %s failed: %s", url, e)
            return False

        logger.info("pre-flight %s -> HTTP %s", url, status)
        return 200 <= status < 400
