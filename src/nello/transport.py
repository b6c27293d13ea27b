from __future__ import annotations

import logging
from typing import Any, Callable, Optional

import requests

from .models import Token
from .result import Result

logger = logging.getLogger(__name__)

NO_TOKEN_MSG = "No token set! Please generate token!"
UNKNOWN_ERROR_MSG = "Unknown error!"

TokenProvider = Callable[[], Optional[Token]]


def fetch_token(
    client_id: str,
    client_secret: str,
    auth_url: str,
    session: Optional[requests.Session] = None,
    timeout: float = 10,
) -> Result:
    """Exchange client credentials for a bearer token."""
    if not client_id or not client_secret:
        return Result.failure("No Client ID / Client Secret provided!")

    session = session or requests.Session()
    try:
        resp = session.post(
            auth_url,
            data={"grant_type": "client_credentials", "client_id": client_id, "client_secret": client_secret},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=timeout,
        )
    except requests.RequestException as exc:
        logger.warning("Token request failed: %s", exc)
        return Result.failure(str(exc))

    if resp.status_code != 200:
        logger.warning("Token request returned HTTP %s", resp.status_code)
        return Result.failure(UNKNOWN_ERROR_MSG)

    try:
        payload = resp.json()
    except ValueError as exc:
        return Result.failure(str(exc))
    return Result.success(Token(
        token_type=str(payload.get("token_type") or ""),
        access_token=str(payload.get("access_token") or ""),
    ))


class ApiTransport:
    """Sends authenticated JSON requests to the public API and unwraps its envelope."""

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        session: Optional[requests.Session] = None,
        timeout: float = 10,
        user_agent: str = "nello-python/1.0",
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.token_provider = token_provider
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": user_agent})

    def url(self, path: str) -> str:
        return self.base_url + path.lstrip("/")

    def request(self, method: str, path: str, body: Optional[dict[str, Any]] = None) -> Result:
        token = self.token_provider()
        if token is None or not token.token_type or not token.access_token:
            return Result.failure(NO_TOKEN_MSG)

        url = self.url(path)
        try:
            resp = self._session.request(
                method,
                url,
                headers={"Authorization": token.authorization},
                json=body or {},
                timeout=self.timeout,
            )
            payload = resp.json()
        except requests.RequestException as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            return Result.failure(str(exc))
        except ValueError as exc:
            logger.warning("%s %s returned a non-JSON body: %s", method, url, exc)
            return Result.failure(str(exc))

        result = payload.get("result") if isinstance(payload, dict) else None
        if isinstance(result, dict) and result.get("success") is True:
            return Result.success(payload.get("data"))

        logger.warning("%s %s was not successful: %r", method, url, result)
        return Result.failure(UNKNOWN_ERROR_MSG)
