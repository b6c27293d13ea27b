from __future__ import annotations
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Dict, List, Optional
import yaml

from .models import Token

DEFAULT_ACTIONS = ["swipe", "geo", "tw", "deny"]

@dataclass
class ApiConfig:
    base_url: str = "https://public-api.nello.io/v1/"
    auth_url: str = "https://auth.nello.io/oauth/token/"
    timeout_seconds: float = 10.0

@dataclass
class WebhookConfig:
    host: str = "0.0.0.0"
    actions: List[str] = field(default_factory=lambda: list(DEFAULT_ACTIONS))
    max_body_bytes: Optional[int] = None

@dataclass
class TlsConfig:
    key: str = ""      # file path or inline PEM
    cert: str = ""     # file path or inline PEM
    ca: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.key and self.cert)

@dataclass
class Credentials:
    client_id: str = ""
    client_secret: str = ""
    token: Optional[Token] = None

@dataclass
class AppConfig:
    api: ApiConfig = field(default_factory=ApiConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    tls: TlsConfig = field(default_factory=TlsConfig)
    credentials: Credentials = field(default_factory=Credentials)

def load_credentials() -> Credentials:
    token_type = os.environ.get("NELLO_TOKEN_TYPE", "")
    access_token = os.environ.get("NELLO_ACCESS_TOKEN", "")
    return Credentials(
        client_id=os.environ.get("NELLO_CLIENT_ID", ""),
        client_secret=os.environ.get("NELLO_CLIENT_SECRET", ""),
        token=Token(token_type, access_token) if token_type and access_token else None,
    )

def load_config(path: Optional[str] = None) -> AppConfig:
    data: Dict[str, Any] = {}
    if path:
        p = Path(path)
        if p.exists():
            data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}

    api = data.get("api", {})
    webhook = data.get("webhook", {})
    tls = data.get("tls", {})
    max_body = webhook.get("max_body_bytes")

    return AppConfig(
        api=ApiConfig(
            base_url=str(api.get("base_url", ApiConfig.base_url)),
            auth_url=str(api.get("auth_url", ApiConfig.auth_url)),
            timeout_seconds=float(api.get("timeout_seconds", ApiConfig.timeout_seconds)),
        ),
        webhook=WebhookConfig(
            host=str(webhook.get("host", WebhookConfig.host)),
            actions=list(webhook.get("actions", DEFAULT_ACTIONS)),
            max_body_bytes=int(max_body) if max_body is not None else None,
        ),
        tls=TlsConfig(
            key=str(tls.get("key") or ""),
            cert=str(tls.get("cert") or ""),
            ca=str(tls.get("ca") or ""),
        ),
        credentials=load_credentials(),
    )
