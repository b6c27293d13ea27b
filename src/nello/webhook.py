from __future__ import annotations

import json
import logging
import os
import ssl
import tempfile
import threading
import time
from contextlib import ExitStack
from dataclasses import dataclass, field
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, BinaryIO, Callable, Iterator, Mapping, Optional, Tuple

from .config import TlsConfig
from .result import Result

logger = logging.getLogger(__name__)

WebhookCallback = Callable[[Result], None]

CHUNK_SIZE = 64 * 1024
_MAX_LINE = 64 * 1024


class TransportFailure(RuntimeError):
    """Raised when a webhook body could not be read off the connection."""


class ShapeViolation(ValueError):
    """Raised when a webhook body is valid JSON but has no ``data`` object."""


class PayloadTooLarge(ValueError):
    """Raised when a webhook body exceeds the configured size cap."""


def _transport_failure(exc: BaseException) -> TransportFailure:
    failure = TransportFailure(f"Error while reading webhook body: {exc}")
    failure.__cause__ = exc
    return failure


def _iter_chunked(stream: BinaryIO) -> Iterator[bytes]:
    while True:
        line = stream.readline(_MAX_LINE)
        if not line:
            raise TransportFailure("Connection closed inside chunked body")
        try:
            size = int(line.split(b";", 1)[0].strip(), 16)
        except ValueError as exc:
            raise TransportFailure(f"Invalid chunk size line {line!r}") from exc
        if size == 0:
            # Drain optional trailers up to the terminating blank line.
            while stream.readline(_MAX_LINE) not in (b"\r\n", b"\n", b""):
                pass
            return
        data = stream.read(size)
        if len(data) < size:
            raise TransportFailure(f"Connection closed after {len(data)} of {size} chunk bytes")
        stream.read(2)
        yield data


def _iter_body(stream: BinaryIO, headers: Mapping[str, str]) -> Iterator[bytes]:
    if "chunked" in (headers.get("Transfer-Encoding") or "").lower():
        yield from _iter_chunked(stream)
        return

    try:
        length = int(headers.get("Content-Length") or 0)
    except ValueError as exc:
        raise TransportFailure(f"Invalid Content-Length {headers.get('Content-Length')!r}") from exc
    if length < 0:
        raise TransportFailure(f"Invalid Content-Length {length}")

    remaining = length
    while remaining > 0:
        chunk = stream.read(min(CHUNK_SIZE, remaining))
        if not chunk:
            raise TransportFailure(f"Connection closed after {length - remaining} of {length} body bytes")
        remaining -= len(chunk)
        yield chunk


@dataclass
class _RequestContext:
    """State for one inbound request: its body buffer and the bound callback."""

    callback: WebhookCallback
    buffer: bytearray = field(default_factory=bytearray)
    delivered: bool = False

    def deliver(self, result: Result) -> Result:
        if self.delivered:
            raise RuntimeError("Webhook result was already delivered for this request")
        self.delivered = True
        self.buffer.clear()
        try:
            self.callback(result)
        except Exception:
            logger.exception("Webhook callback raised")
        return result


class WebhookReceiver:
    """Reads one pushed request body, parses it and hands the outcome to ``callback``.

    Every call to :meth:`receive` delivers exactly one :class:`Result`:
    a transport failure, a parse/shape failure carrying the message text, or
    the parsed body with ``data["timestamp"]`` set to the receipt second.
    """

    def __init__(
        self,
        callback: WebhookCallback,
        max_body_bytes: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.callback = callback
        self.max_body_bytes = max_body_bytes
        self.clock = clock

    def receive(self, stream: BinaryIO, headers: Mapping[str, str]) -> Result:
        context = _RequestContext(self.callback)
        try:
            self._check_declared_length(headers)
            for chunk in _iter_body(stream, headers):
                context.buffer.extend(chunk)
                if self.max_body_bytes is not None and len(context.buffer) > self.max_body_bytes:
                    raise PayloadTooLarge(f"Webhook body exceeds {self.max_body_bytes} bytes")
        except PayloadTooLarge as exc:
            logger.warning("%s", exc)
            return context.deliver(Result.failure(exc))
        except TransportFailure as exc:
            logger.warning("%s", exc)
            return context.deliver(Result.failure(exc))
        except OSError as exc:
            logger.warning("Webhook connection error: %s", exc)
            return context.deliver(Result.failure(_transport_failure(exc)))

        return context.deliver(self._parse(bytes(context.buffer)))

    def _check_declared_length(self, headers: Mapping[str, str]) -> None:
        declared = headers.get("Content-Length")
        if self.max_body_bytes is None or not declared or not declared.strip().isdigit():
            return
        if int(declared) > self.max_body_bytes:
            raise PayloadTooLarge(f"Webhook body exceeds {self.max_body_bytes} bytes")

    def _parse(self, raw: bytes) -> Result:
        try:
            body: Any = json.loads(raw)
            data = body.get("data") if isinstance(body, dict) else None
            if not isinstance(data, dict):
                raise ShapeViolation("Webhook body has no 'data' object")
            data["timestamp"] = round(self.clock())
        except (ValueError, RecursionError) as exc:
            logger.info("Rejected webhook body: %s", exc)
            return Result.failure(str(exc))
        logger.info("Received webhook event %s", body.get("action", "(no action)"))
        return Result.success(body)


class WebhookRequestHandler(BaseHTTPRequestHandler):
    server: "WebhookHTTPServer"

    def _acknowledge(self, status: int) -> None:
        self.send_response(status)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_POST(self) -> None:  # noqa: N802
        result = self.server.receiver.receive(self.rfile, self.headers)
        if result.ok:
            self._acknowledge(HTTPStatus.NO_CONTENT)
        elif isinstance(result.error, TransportFailure):
            self.close_connection = True
        elif isinstance(result.error, PayloadTooLarge):
            self.close_connection = True
            self._acknowledge(HTTPStatus.REQUEST_ENTITY_TOO_LARGE)
        else:
            self._acknowledge(HTTPStatus.BAD_REQUEST)

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)


class WebhookHTTPServer(ThreadingHTTPServer):
    request_queue_size = 64
    handshake_timeout = 10.0
    block_on_close = False

    def __init__(
        self,
        address: Tuple[str, int],
        receiver: WebhookReceiver,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        super().__init__(address, WebhookRequestHandler)
        self.receiver = receiver
        self.ssl_context = ssl_context
        self.secure = ssl_context is not None

    def finish_request(self, request: Any, client_address: Any) -> None:
        # Handshake on the per-connection thread, never in accept().
        if self.ssl_context is None:
            super().finish_request(request, client_address)
            return

        request.settimeout(self.handshake_timeout)
        try:
            conn = self.ssl_context.wrap_socket(request, server_side=True)
        except OSError as exc:
            logger.warning("TLS handshake with %s failed: %s", client_address[0], exc)
            return
        try:
            conn.settimeout(None)
            super().finish_request(conn, client_address)
        finally:
            self.shutdown_request(conn)


class WebhookServer:
    """Runs a webhook listener on a background thread until :meth:`stop` is called."""

    def __init__(
        self,
        receiver: WebhookReceiver,
        host: str = "0.0.0.0",
        port: int = 0,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self._httpd = WebhookHTTPServer((host, port), receiver, ssl_context)
        self._thread: Optional[threading.Thread] = None

    @property
    def address(self) -> Tuple[str, int]:
        host, port = self._httpd.server_address[:2]
        return str(host), int(port)

    @property
    def secure(self) -> bool:
        return self._httpd.secure

    def start(self) -> "WebhookServer":
        self._thread = threading.Thread(target=self._httpd.serve_forever, name="nello-webhook", daemon=True)
        self._thread.start()
        host, port = self.address
        scheme = "https" if self.secure else "http"
        logger.info("Webhook listener on %s://%s:%s", scheme, host, port)
        return self

    def stop(self) -> None:
        if self._thread is not None:
            self._httpd.shutdown()
            self._thread.join()
            self._thread = None
        self._httpd.server_close()

    def __enter__(self) -> "WebhookServer":
        return self.start()

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()


def _is_inline_pem(value: str) -> bool:
    return value.lstrip().startswith("-----BEGIN")


def _as_file(value: str, stack: ExitStack) -> str:
    if not _is_inline_pem(value):
        return value
    fd, path = tempfile.mkstemp(suffix=".pem")
    stack.callback(os.unlink, path)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(value)
    return path


def build_ssl_context(tls: TlsConfig) -> ssl.SSLContext:
    """Server-side TLS context; key, cert and CA may be file paths or inline PEM text."""
    if not tls.enabled:
        raise ValueError("TLS needs both a key and a certificate")

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    with ExitStack() as stack:
        context.load_cert_chain(certfile=_as_file(tls.cert, stack), keyfile=_as_file(tls.key, stack))
    if tls.ca:
        if _is_inline_pem(tls.ca):
            context.load_verify_locations(cadata=tls.ca)
        else:
            context.load_verify_locations(cafile=tls.ca)
    return context
