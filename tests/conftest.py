from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable

import requests

DATA_DIR = Path(__file__).parent / "data"
TLS_CERT = DATA_DIR / "webhook-cert.pem"  # self-signed for localhost and 127.0.0.1
TLS_KEY = DATA_DIR / "webhook-key.pem"


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str | None = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self._text = text

    def json(self) -> Any:
        if self._text is not None:
            raise ValueError(f"Expecting value: {self._text[:20]!r}")
        return self._payload


def ok(data: Any = None) -> FakeResponse:
    return FakeResponse(200, {"result": {"success": True}, "data": data})


Responder = Callable[[str, str, dict], FakeResponse]


class StubSession(requests.Session):
    """requests.Session that records calls and answers from a responder instead of the network."""

    def __init__(self, responder: Responder) -> None:
        super().__init__()
        self.responder = responder
        self.calls: list[tuple[str, str, dict]] = []
        self._lock = threading.Lock()

    def request(self, method, url, **kwargs):  # type: ignore[override]
        with self._lock:
            self.calls.append((method, url, kwargs))
        return self.responder(method, url, kwargs)
