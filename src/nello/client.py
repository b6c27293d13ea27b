from __future__ import annotations

import dataclasses
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import requests

from .config import AppConfig
from .ical import MalformedScheduleError, decode, encode, has_calendar_markers
from .models import ScheduleDescription, Token, WebhookUri
from .result import Result
from .transport import ApiTransport, fetch_token
from .webhook import WebhookCallback, WebhookReceiver, WebhookServer, build_ssl_context

logger = logging.getLogger(__name__)

WRONG_ICAL_MSG = (
    "Wrong ical data provided! Missing BEGIN:VCALENDAR, END:VCALENDAR, BEGIN:VEVENT or END:VEVENT."
)
INVALID_URI_MSG = 'Invalid url specified! Please specify port using ":", e.g. domain.com:PORT!'
NO_TIME_WINDOWS_MSG = "Could not retrieve time windows"

_SCHEME_RE = re.compile(r"^\s*https?://", re.IGNORECASE)

IcalInput = Union[str, ScheduleDescription, Mapping[str, Any]]


def _decode_window(entry: Dict[str, Any]) -> Dict[str, Any]:
    ical = entry.get("ical")
    if not isinstance(ical, str):
        raise MalformedScheduleError(f"Time window {entry.get('id')!r} has no calendar text")
    return {**entry, "ical": decode(ical)}


class NelloClient:
    """Client for the public nello.io API.

    Holds the bearer token as an immutable snapshot that :meth:`set_token`
    swaps out, and owns at most one running webhook listener.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        token: Optional[Token] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.config = config or AppConfig()
        self._token = token if token is not None else self.config.credentials.token
        self._token_lock = threading.Lock()
        self._session = session or requests.Session()
        self.transport = ApiTransport(
            self.config.api.base_url,
            self.get_token,
            session=self._session,
            timeout=self.config.api.timeout_seconds,
        )
        self.server: Optional[WebhookServer] = None

    @property
    def is_secure(self) -> bool:
        return self.config.tls.enabled

    def get_token(self) -> Optional[Token]:
        token = self._token
        if token is None or not token.token_type or not token.access_token:
            return None
        return token

    def set_token(self, client_id: Optional[str] = None, client_secret: Optional[str] = None) -> Result:
        creds = self.config.credentials
        result = fetch_token(
            client_id or creds.client_id,
            client_secret or creds.client_secret,
            self.config.api.auth_url,
            session=self._session,
            timeout=self.config.api.timeout_seconds,
        )
        if result.ok:
            with self._token_lock:
                self._token = result.value
            logger.info("Obtained a new %s token", result.value.token_type or "bearer")
        return result

    def get_locations(self) -> Result:
        return self.transport.request("GET", "locations/")

    def open_door(self, location_id: str) -> Result:
        return self.transport.request("PUT", f"locations/{location_id}/open/")

    def get_time_windows(self, location_id: str) -> Result:
        result = self.transport.request("GET", f"locations/{location_id}/tw/")
        if not result.ok:
            return result
        try:
            windows = [_decode_window(entry) for entry in result.value or []]
        except MalformedScheduleError as exc:
            logger.warning("Could not decode time windows of %s: %s", location_id, exc)
            return Result.failure(str(exc))
        return Result.success(windows)

    def create_time_window(self, location_id: str, name: str, ical: IcalInput) -> Result:
        if isinstance(ical, str):
            text = ical
        else:
            if isinstance(ical, ScheduleDescription):
                description = dataclasses.replace(ical, name=name)
            else:
                description = ScheduleDescription.from_dict(ical, name=name)
            encoded = encode(description)
            if not encoded.ok:
                logger.warning("Could not encode time window %r: %s", name, encoded.error)
                return Result.failure(WRONG_ICAL_MSG)
            text = encoded.value

        if not has_calendar_markers(text):
            return Result.failure(WRONG_ICAL_MSG)

        return self.transport.request("POST", f"locations/{location_id}/tw/", {"name": name, "ical": text})

    def delete_time_window(self, location_id: str, tw_id: str) -> Result:
        return self.transport.request("DELETE", f"locations/{location_id}/tw/{tw_id}/")

    def delete_all_time_windows(
        self,
        location_id: str,
        callback: Optional[Callable[[Result], None]] = None,
        max_workers: int = 8,
    ) -> List[Result]:
        """Delete every time window of a location.

        Deletes run concurrently and ``callback`` fires once per delete as
        each one completes. A partial failure is not rolled back.
        """
        listing = self.transport.request("GET", f"locations/{location_id}/tw/")
        if not listing.ok:
            failure = Result.failure(NO_TIME_WINDOWS_MSG)
            if callback:
                callback(failure)
            return [failure]

        windows = listing.value or []
        if not windows:
            return []

        results: List[Result] = []

        def report(result: Result) -> None:
            results.append(result)
            if callback:
                callback(result)

        ids = [tw.get("id") if isinstance(tw, Mapping) else None for tw in windows]
        for tw, tw_id in zip(windows, ids):
            if tw_id is None:
                logger.warning("Skipping time window without id: %r", tw)
                report(Result.failure(f"Time window has no id: {tw!r}"))

        pending = [tw_id for tw_id in ids if tw_id is not None]
        if not pending:
            return results
        with ThreadPoolExecutor(max_workers=min(max_workers, len(pending))) as pool:
            futures = [pool.submit(self.delete_time_window, location_id, tw_id) for tw_id in pending]
            for future in as_completed(futures):
                report(future.result())
        return results

    def parse_webhook_uri(self, uri: Union[str, Mapping[str, Any]]) -> Optional[WebhookUri]:
        if isinstance(uri, Mapping):
            host = str(uri.get("url") or "")
            port: Any = uri.get("port")
        else:
            text = _SCHEME_RE.sub("", str(uri))
            if ":" not in text:
                return None
            host, _, port = text.partition(":")

        host = _SCHEME_RE.sub("", host).strip().rstrip("/")
        try:
            port = int(port)
        except (TypeError, ValueError):
            return None
        if not host or not 0 < port < 65536:
            return None

        scheme = "https://" if self.is_secure else "http://"
        return WebhookUri(ssl=self.is_secure, url=scheme + host, port=port)

    def listen(
        self,
        location_id: str,
        uri: Union[str, Mapping[str, Any]],
        callback: WebhookCallback,
        actions: Optional[Sequence[str]] = None,
    ) -> Result:
        """Subscribe to a location's events and start the local listener.

        ``uri`` is the externally reachable ``host:port`` the API pushes to;
        the listener binds the same port on the configured host.
        """
        webhook_uri = self.parse_webhook_uri(uri)
        if webhook_uri is None:
            return Result.failure(INVALID_URI_MSG)

        self._stop_server()
        try:
            ssl_context = build_ssl_context(self.config.tls) if self.is_secure else None
            receiver = WebhookReceiver(callback, max_body_bytes=self.config.webhook.max_body_bytes)
            server = WebhookServer(receiver, host=self.config.webhook.host, port=webhook_uri.port, ssl_context=ssl_context)
        except OSError as exc:
            logger.warning("Could not start webhook listener on port %s: %s", webhook_uri.port, exc)
            return Result.failure(str(exc))
        self.server = server.start()

        result = self.transport.request(
            "PUT",
            f"locations/{location_id}/webhook/",
            {"url": webhook_uri.uri, "actions": list(actions or self.config.webhook.actions)},
        )
        if not result.ok:
            self._stop_server()
            return result
        return Result.success(webhook_uri)

    def unlisten(self, location_id: str) -> Result:
        self._stop_server()
        return self.transport.request("DELETE", f"locations/{location_id}/webhook/")

    def close(self) -> None:
        self._stop_server()
        self._session.close()

    def _stop_server(self) -> None:
        if self.server is not None:
            self.server.stop()
            self.server = None

    def __enter__(self) -> "NelloClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
