from __future__ import annotations

import io
import json
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
import requests

from conftest import TLS_CERT, TLS_KEY
from nello.config import TlsConfig
from nello.result import Result
from nello.webhook import (
    PayloadTooLarge,
    TransportFailure,
    WebhookReceiver,
    WebhookServer,
    build_ssl_context,
)


class Recorder:
    def __init__(self) -> None:
        self.results: list[Result] = []
        self._lock = threading.Lock()

    def __call__(self, result: Result) -> None:
        with self._lock:
            self.results.append(result)


def _receive(receiver: WebhookReceiver, body: bytes, headers: dict[str, str] | None = None) -> Result:
    return receiver.receive(io.BytesIO(body), headers if headers is not None else {"Content-Length": str(len(body))})


def _chunked(body: bytes, size: int = 4) -> bytes:
    out = b""
    for i in range(0, len(body), size):
        piece = body[i:i + size]
        out += f"{len(piece):x}\r\n".encode() + piece + b"\r\n"
    return out + b"0\r\n\r\n"


def test_receiver_stamps_data_and_delivers_body_once():
    recorder = Recorder()
    receiver = WebhookReceiver(recorder, clock=lambda: 1760000000.4)

    result = _receive(receiver, b'{"action": "swipe", "data": {"foo": 1}}')

    assert recorder.results == [result]
    assert result.ok
    assert result.value == {"action": "swipe", "data": {"foo": 1, "timestamp": 1760000000}}


def test_receiver_uses_current_epoch_second_by_default():
    recorder = Recorder()
    before = time.time()

    _receive(WebhookReceiver(recorder), b'{"data": {"foo": 1}}')

    body = recorder.results[0].value
    assert isinstance(body["data"]["timestamp"], int)
    assert before - 1 <= body["data"]["timestamp"] <= time.time() + 1
    assert body["data"]["foo"] == 1


def test_receiver_reports_invalid_json_as_single_failure():
    recorder = Recorder()

    result = _receive(WebhookReceiver(recorder), b"{not json")

    assert len(recorder.results) == 1
    assert result.ok is False
    assert isinstance(result.error, str)
    assert result.error


@pytest.mark.parametrize("body", [b'{"foo": 1}', b'{"data": 5}', b'[{"data": {}}]', b'"data"', b""])
def test_receiver_reports_shape_violations_as_failure(body: bytes):
    recorder = Recorder()

    result = _receive(WebhookReceiver(recorder), body)

    assert len(recorder.results) == 1
    assert result.ok is False
    assert isinstance(result.error, str)


def test_receiver_reports_deeply_nested_json_as_single_failure():
    recorder = Recorder()
    body = b"[" * 200000 + b"]" * 200000

    result = _receive(WebhookReceiver(recorder), body)

    assert recorder.results == [result]
    assert result.ok is False
    assert isinstance(result.error, str)


def test_receiver_reports_short_body_as_transport_failure():
    recorder = Recorder()

    result = _receive(WebhookReceiver(recorder), b'{"data": {}}', {"Content-Length": "100"})

    assert len(recorder.results) == 1
    assert isinstance(result.error, TransportFailure)


def test_receiver_reports_socket_errors_as_transport_failure():
    class BrokenStream(io.RawIOBase):
        def read(self, size=-1):
            raise ConnectionResetError("peer reset")

    recorder = Recorder()
    receiver = WebhookReceiver(recorder)

    result = receiver.receive(BrokenStream(), {"Content-Length": "20"})

    assert len(recorder.results) == 1
    assert isinstance(result.error, TransportFailure)
    assert isinstance(result.error.__cause__, ConnectionResetError)


def test_receiver_reads_chunked_bodies():
    recorder = Recorder()
    body = json.dumps({"data": {"id": 42, "name": "front door"}}).encode()

    result = _receive(WebhookReceiver(recorder), _chunked(body), {"Transfer-Encoding": "chunked"})

    assert result.ok
    assert result.value["data"]["id"] == 42


def test_receiver_rejects_broken_chunk_framing():
    recorder = Recorder()

    result = _receive(WebhookReceiver(recorder), b"zz\r\n{}\r\n", {"Transfer-Encoding": "chunked"})

    assert isinstance(result.error, TransportFailure)
    assert len(recorder.results) == 1


def test_receiver_enforces_optional_size_cap():
    recorder = Recorder()
    receiver = WebhookReceiver(recorder, max_body_bytes=16)
    body = json.dumps({"data": {"padding": "x" * 64}}).encode()

    declared = _receive(receiver, body)
    streamed = _receive(receiver, _chunked(body), {"Transfer-Encoding": "chunked"})

    assert isinstance(declared.error, PayloadTooLarge)
    assert isinstance(streamed.error, PayloadTooLarge)
    assert len(recorder.results) == 2


def test_receiver_survives_a_raising_callback(caplog):
    calls = []

    def callback(result: Result) -> None:
        calls.append(result)
        raise RuntimeError("boom")

    result = _receive(WebhookReceiver(callback), b'{"data": {}}')

    assert result.ok
    assert len(calls) == 1
    assert "Webhook callback raised" in caplog.text


@pytest.fixture
def http():
    session = requests.Session()
    session.trust_env = False
    yield session
    session.close()


@pytest.fixture
def listener():
    recorder = Recorder()
    server = WebhookServer(WebhookReceiver(recorder), host="127.0.0.1", port=0).start()
    yield server, recorder
    server.stop()


def _url(server: WebhookServer) -> str:
    host, port = server.address
    return f"http://{host}:{port}/"


def test_server_acknowledges_and_delivers_posted_event(listener, http):
    server, recorder = listener

    resp = http.post(_url(server), json={"action": "geo", "data": {"location_id": "abc"}}, timeout=5)

    assert resp.status_code == 204
    assert len(recorder.results) == 1
    assert recorder.results[0].value["data"]["location_id"] == "abc"
    assert isinstance(recorder.results[0].value["data"]["timestamp"], int)


def test_server_answers_bad_request_for_malformed_body(listener, http):
    server, recorder = listener

    resp = http.post(_url(server), data=b"{oops", timeout=5)

    assert resp.status_code == 400
    assert len(recorder.results) == 1
    assert recorder.results[0].ok is False


def test_server_ignores_other_methods(listener, http):
    server, recorder = listener

    resp = http.get(_url(server), timeout=5)

    assert resp.status_code == 501
    assert recorder.results == []


def test_concurrent_requests_are_delivered_once_each(listener, http):
    server, recorder = listener
    url = _url(server)

    def post(i: int) -> int:
        with requests.Session() as s:
            s.trust_env = False
            return s.post(url, json={"data": {"id": i}}, timeout=5).status_code

    with ThreadPoolExecutor(max_workers=8) as pool:
        statuses = list(pool.map(post, range(20)))

    assert statuses == [204] * 20
    assert len(recorder.results) == 20
    assert sorted(r.value["data"]["id"] for r in recorder.results) == list(range(20))


def test_build_ssl_context_requires_key_and_cert():
    with pytest.raises(ValueError):
        build_ssl_context(TlsConfig(key="", cert=""))


@pytest.fixture
def tls_listener():
    recorder = Recorder()
    context = build_ssl_context(TlsConfig(key=str(TLS_KEY), cert=str(TLS_CERT)))
    server = WebhookServer(WebhookReceiver(recorder), host="127.0.0.1", port=0, ssl_context=context).start()
    yield server, recorder
    server.stop()


def _https_url(server: WebhookServer) -> str:
    host, port = server.address
    return f"https://{host}:{port}/"


def test_tls_server_delivers_posted_event(tls_listener, http):
    server, recorder = tls_listener

    resp = http.post(_https_url(server), json={"action": "deny", "data": {"id": 7}}, timeout=5, verify=str(TLS_CERT))

    assert server.secure
    assert resp.status_code == 204
    assert len(recorder.results) == 1
    assert recorder.results[0].value["data"]["id"] == 7


def test_tls_server_keeps_accepting_while_a_client_stalls_before_handshake(tls_listener, http):
    server, recorder = tls_listener

    with socket.create_connection(server.address, timeout=5):
        resp = http.post(_https_url(server), json={"data": {"id": 1}}, timeout=5, verify=str(TLS_CERT))

    assert resp.status_code == 204
    assert [r.value["data"]["id"] for r in recorder.results] == [1]


def test_tls_server_drops_failed_handshakes_without_delivery(tls_listener, http):
    server, recorder = tls_listener

    with pytest.raises(requests.exceptions.SSLError):
        http.post(_https_url(server), json={"data": {}}, timeout=5)
    resp = http.post(_https_url(server), json={"data": {}}, timeout=5, verify=str(TLS_CERT))

    assert resp.status_code == 204
    assert len(recorder.results) == 1


def test_build_ssl_context_accepts_inline_pem(http):
    pem_cert = TLS_CERT.read_text(encoding="utf-8")
    pem_key = TLS_KEY.read_text(encoding="utf-8")
    recorder = Recorder()

    context = build_ssl_context(TlsConfig(key=pem_key, cert=pem_cert, ca=pem_cert))

    assert context.cert_store_stats()["x509_ca"] == 1
    with WebhookServer(WebhookReceiver(recorder), host="127.0.0.1", port=0, ssl_context=context) as server:
        resp = http.post(
            _https_url(server),
            json={"data": {"id": 3}},
            headers={"Connection": "close"},
            timeout=5,
            verify=str(TLS_CERT),
        )

    assert resp.status_code == 204
    assert recorder.results[0].value["data"]["id"] == 3


def test_build_ssl_context_loads_ca_file():
    context = build_ssl_context(TlsConfig(key=str(TLS_KEY), cert=str(TLS_CERT), ca=str(TLS_CERT)))

    assert context.cert_store_stats()["x509_ca"] == 1
