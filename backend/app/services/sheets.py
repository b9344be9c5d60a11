from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import socket
import time
from decimal import Decimal, InvalidOperation
from threading import Lock
from typing import Any, Callable, Optional, Protocol
from urllib import parse, request
from urllib.error import HTTPError, URLError

import jwt

from backend.app.errors import ConfigurationError, TransientNetworkError
from backend.app.models import OrderRow
from backend.app.services.phone import generate_order_id, normalize_digits
from backend.app.services.resilience import RETRYABLE_HTTP_STATUSES
from backend.app.settings import Settings

logger = logging.getLogger("order_notifier.sheets")

SHEETS_API_URL = "https://sheets.googleapis.com/v4/spreadsheets"
SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets.readonly"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
TOKEN_LIFETIME_SECONDS = 3600
TOKEN_REFRESH_MARGIN_SECONDS = 60

COLUMNS = {
    "order_date": 0,
    "name": 1,
    "phone": 2,
    "whatsapp": 3,
    "governorate": 4,
    "area": 5,
    "address": 6,
    "order_details": 7,
    "quantity": 8,
    "total_price": 9,
    "product_name": 10,
    "status": 11,
    "notes": 12,
    "source_channel": 13,
}

_SPREADSHEET_URL = re.compile(r"/spreadsheets/d/([a-zA-Z0-9_-]+)")
_PRICE_CHARS = re.compile(r"[^0-9.]")


class OrderSource(Protocol):
    def fetch_rows(self) -> list[OrderRow]: ...

    def check_configuration(self) -> Optional[str]: ...


def extract_spreadsheet_id(value: str) -> str:
    value = (value or "").strip()
    match = _SPREADSHEET_URL.search(value)
    if match:
        return match.group(1)
    return "" if "/" in value else value


def parse_service_account_key(raw: str) -> dict[str, Any]:
    text = (raw or "").strip()
    if not text:
        raise ConfigurationError("GOOGLE_SERVICE_ACCOUNT_KEY is not configured")
    if not text.startswith("{"):
        try:
            text = base64.b64decode(text, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ConfigurationError("service account key is neither json nor base64 json") from exc
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigurationError("service account key is not valid json") from exc
    if not isinstance(decoded, dict):
        raise ConfigurationError("service account key must be a json object")
    missing = [field for field in ("client_email", "private_key") if not decoded.get(field)]
    if missing:
        raise ConfigurationError(f"service account key missing fields: {', '.join(missing)}")
    return decoded


def _cell(row: list[Any], column: str) -> str:
    index = COLUMNS[column]
    if index >= len(row) or row[index] is None:
        return ""
    return str(row[index]).strip()


def parse_price(value: str) -> Optional[Decimal]:
    cleaned = _PRICE_CHARS.sub("", normalize_digits(value).replace("٫", "."))
    if not cleaned:
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def parse_sheet_rows(values: list[list[Any]]) -> list[OrderRow]:
    rows: list[OrderRow] = []
    for offset, raw in enumerate(values[1:], start=2):
        if not any(str(cell).strip() for cell in raw if cell is not None):
            continue
        name = _cell(raw, "name")
        phone = _cell(raw, "phone")
        whatsapp = _cell(raw, "whatsapp")
        order_date = _cell(raw, "order_date")
        rows.append(
            OrderRow(
                order_id=generate_order_id(name, phone or whatsapp, order_date),
                name=name,
                phone_raw=phone,
                whatsapp_raw=whatsapp,
                status=_cell(raw, "status"),
                total_price=parse_price(_cell(raw, "total_price")),
                product_name=_cell(raw, "product_name") or None,
                row_index=offset,
                order_date=order_date,
                governorate=_cell(raw, "governorate") or None,
                area=_cell(raw, "area") or None,
                address=_cell(raw, "address") or None,
                order_details=_cell(raw, "order_details") or None,
                quantity=_cell(raw, "quantity") or None,
                notes=_cell(raw, "notes") or None,
                source_channel=_cell(raw, "source_channel") or None,
            )
        )
    return rows


def _read_json(req: request.Request, *, timeout: float, context: str) -> dict[str, Any]:
    try:
        with request.urlopen(req, timeout=timeout) as response:
            body = response.read().decode("utf-8")
    except HTTPError as exc:
        if exc.code in RETRYABLE_HTTP_STATUSES:
            raise TransientNetworkError(f"{context} returned {exc.code}") from exc
        raise ConfigurationError(f"{context} rejected with status {exc.code}") from exc
    except (URLError, TimeoutError, socket.timeout) as exc:
        raise TransientNetworkError(f"{context} request failed") from exc
    try:
        decoded = json.loads(body)
    except json.JSONDecodeError as exc:
        raise TransientNetworkError(f"{context} response was not valid json") from exc
    if not isinstance(decoded, dict):
        raise TransientNetworkError(f"{context} response was not a json object")
    return decoded


class GoogleSheetsSource:
    def __init__(
        self,
        *,
        spreadsheet_id: str,
        service_account_key: str,
        sheet_range: str = "A:P",
        timeout_seconds: float = 20.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.spreadsheet_id = spreadsheet_id
        self.sheet_range = sheet_range
        self.timeout_seconds = timeout_seconds
        self._raw_key = service_account_key
        self._clock = clock
        self._lock = Lock()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "GoogleSheetsSource":
        spreadsheet_id = settings.google_spreadsheet_id or extract_spreadsheet_id(
            settings.google_spreadsheet_url
        )
        return cls(
            spreadsheet_id=spreadsheet_id,
            service_account_key=settings.google_service_account_key,
            sheet_range=settings.google_sheet_range,
        )

    def check_configuration(self) -> Optional[str]:
        if not self.spreadsheet_id:
            raise ConfigurationError("GOOGLE_SPREADSHEET_ID or GOOGLE_SPREADSHEET_URL is not configured")
        parse_service_account_key(self._raw_key)
        return None

    def _access_token(self) -> str:
        with self._lock:
            now = self._clock()
            if self._token and now < self._token_expires_at - TOKEN_REFRESH_MARGIN_SECONDS:
                return self._token
            credentials = parse_service_account_key(self._raw_key)
            token_uri = credentials.get("token_uri") or DEFAULT_TOKEN_URI
            claims = {
                "iss": credentials["client_email"],
                "scope": SHEETS_SCOPE,
                "aud": token_uri,
                "iat": int(now),
                "exp": int(now) + TOKEN_LIFETIME_SECONDS,
            }
            try:
                assertion = jwt.encode(claims, credentials["private_key"], algorithm="RS256")
            except (jwt.PyJWTError, ValueError, TypeError) as exc:
                raise ConfigurationError("service account private key could not sign") from exc
            encoded = parse.urlencode(
                {
                    "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                    "assertion": assertion,
                }
            ).encode("utf-8")
            req = request.Request(
                token_uri,
                data=encoded,
                method="POST",
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            decoded = _read_json(req, timeout=self.timeout_seconds, context="token endpoint")
            token = decoded.get("access_token")
            if not token:
                raise ConfigurationError("token endpoint returned no access_token")
            self._token = str(token)
            self._token_expires_at = now + float(decoded.get("expires_in", TOKEN_LIFETIME_SECONDS))
            return self._token

    def invalidate_token(self) -> None:
        with self._lock:
            self._token = None
            self._token_expires_at = 0.0

    def fetch_values(self) -> list[list[Any]]:
        self.check_configuration()
        token = self._access_token()
        url = (
            f"{SHEETS_API_URL}/{parse.quote(self.spreadsheet_id)}/values/"
            f"{parse.quote(self.sheet_range)}?majorDimension=ROWS"
        )
        req = request.Request(url, method="GET", headers={"Authorization": f"Bearer {token}"})
        try:
            decoded = _read_json(req, timeout=self.timeout_seconds, context="sheets api")
        except ConfigurationError:
            self.invalidate_token()
            raise
        values = decoded.get("values", [])
        return values if isinstance(values, list) else []

    def fetch_rows(self) -> list[OrderRow]:
        values = self.fetch_values()
        rows = parse_sheet_rows(values)
        logger.info("sheet_rows_fetched rows=%s raw_rows=%s", len(rows), len(values))
        return rows
