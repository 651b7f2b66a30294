from __future__ import annotations

import io
from urllib import error

from market_agent import preflight as preflight_mod
from market_agent.preflight import PreflightVerifier


class _Resp:
    def __init__(self, status: int) -> None:
        self.status = status

    def __enter__(self) -> _Resp:
        return self

    def __exit__(self, *exc) -> None:
        return None


def _patch(monkeypatch, outcome) -> list:
    seen: list = []

    def fake_urlopen(req, timeout=None):
        seen.append((req.get_method(), req.full_url, timeout))
        if isinstance(outcome, Exception):
            raise outcome
        return _Resp(outcome)

    monkeypatch.setattr(preflight_mod.request, "urlopen", fake_urlopen)
    return seen


def test_success_and_redirect_statuses_pass(monkeypatch) -> None:
    seen = _patch(monkeypatch, 200)
    assert PreflightVerifier().verify("https://gist.github.com/a/1")
    assert seen == [("HEAD", "https://gist.github.com/a/1", 10.0)]

    _patch(monkeypatch, 302)
    assert PreflightVerifier().verify("https://gist.github.com/a/1")


def test_not_found_fails(monkeypatch) -> None:
    _patch(
        monkeypatch,
        error.HTTPError("https://gist.github.com/a/1", 404, "Not Found", hdrs=None, fp=io.BytesIO(b"")),
    )
    assert not PreflightVerifier().verify("https://gist.github.com/a/1")


def test_unreachable_host_fails(monkeypatch) -> None:
    _patch(monkeypatch, error.URLError("timed out"))
    assert not PreflightVerifier().verify("https://gist.github.com/a/1")


def test_local_paths_are_never_checked(monkeypatch) -> None:
    seen = _patch(monkeypatch, 200)
    assert not PreflightVerifier().verify("/tmp/deliverable.md")
    assert not PreflightVerifier().verify("file:///tmp/deliverable.md")
    assert not PreflightVerifier().verify("")
    assert seen == []
