from __future__ import annotations

import json
import logging
import socket
from dataclasses import dataclass
from typing import Any, Optional, Protocol
from urllib import parse, request
from urllib.error import HTTPError, URLError

from backend.app.errors import ConfigurationError, NotifierError, TransientNetworkError, ValidationError
from backend.app.services.resilience import RETRYABLE_HTTP_STATUSES

logger = logging.getLogger("order_notifier.transport")


@dataclass(frozen=True)
class ConnectionStatus:
    is_connected: bool
    session_exists: bool


class MessagingTransport(Protocol):
    def send(self, phone: str, message: str) -> None: ...

    def is_registered(self, phone: str) -> bool: ...

    def connection_status(self) -> ConnectionStatus: ...


class HttpGatewayTransport:
    """WhatsApp gateway client. Session pairing is owned by the gateway itself."""

    def __init__(self, base_url: str, token: str = "", timeout_seconds: float = 15.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds

    def _request(self, method: str, path: str, payload: Optional[dict[str, Any]] = None) -> dict:
        if not self.base_url:
            raise ConfigurationError("WHATSAPP_GATEWAY_URL is not configured")
        headers = {"Accept": "application/json"}
        data = None
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = request.Request(f"{self.base_url}{path}", data=data, method=method, headers=headers)
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                body = response.read().decode("utf-8")
        except HTTPError as exc:
            if exc.code in RETRYABLE_HTTP_STATUSES:
                raise TransientNetworkError(f"gateway returned {exc.code} for {path}") from exc
            if exc.code in {401, 403}:
                raise ConfigurationError("gateway rejected the configured token") from exc
            raise ValidationError(f"gateway rejected {path} with status {exc.code}") from exc
        except (URLError, TimeoutError, socket.timeout) as exc:
            raise TransientNetworkError(f"gateway request failed for {path}") from exc

        if not body.strip():
            return {}
        try:
            decoded = json.loads(body)
        except json.JSONDecodeError as exc:
            raise TransientNetworkError("gateway response was not valid json") from exc
        return decoded if isinstance(decoded, dict) else {}

    def send(self, phone: str, message: str) -> None:
        response = self._request("POST", "/send", {"phone": phone, "message": message})
        if response.get("success") is False:
            raise TransientNetworkError(str(response.get("error") or "gateway reported send failure"))

    def is_registered(self, phone: str) -> bool:
        response = self._request("GET", f"/numbers/{parse.quote(phone)}/registered")
        return bool(response.get("registered"))

    def connection_status(self) -> ConnectionStatus:
        if not self.base_url:
            return ConnectionStatus(is_connected=False, session_exists=False)
        try:
            response = self._request("GET", "/status")
        except NotifierError as exc:
            logger.warning("gateway_status_unavailable error=%s", exc)
            return ConnectionStatus(is_connected=False, session_exists=False)
        return ConnectionStatus(
            is_connected=bool(response.get("isConnected", response.get("is_connected"))),
            session_exists=bool(response.get("sessionExists", response.get("session_exists"))),
        )
