from __future__ import annotations

import base64
import io
import json
from decimal import Decimal
from urllib.error import HTTPError

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from backend.app.errors import ConfigurationError, TransientNetworkError
from backend.app.services import sheets
from backend.app.services.sheets import (
    GoogleSheetsSource,
    extract_spreadsheet_id,
    parse_price,
    parse_service_account_key,
    parse_sheet_rows,
)

HEADER = [
    "التاريخ",
    "الاسم",
    "الهاتف",
    "واتساب",
    "المحافظة",
    "المنطقة",
    "العنوان",
    "تفاصيل الطلب",
    "الكمية",
    "السعر",
    "المنتج",
    "الحالة",
    "ملاحظات",
    "المصدر",
]


class _Response:
    def __init__(self, payload: dict) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "_Response":
        return self

    def __exit__(self, *exc) -> bool:
        return False


@pytest.fixture(scope="module")
def service_account() -> dict:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return {
        "client_email": "notifier@example.iam.gserviceaccount.com",
        "private_key": pem,
        "token_uri": "https://oauth2.example.com/token",
        "public_key": public_pem,
    }


def test_parse_sheet_rows_maps_columns() -> None:
    values = [
        HEADER,
        [
            "2024-01-15",
            "Ahmed Ali",
            "01012345678",
            "",
            "القاهرة",
            "مدينة نصر",
            "شارع 9",
            "2 قطعة",
            "2",
            "1,250 ج.م",
            "Serum",
            "تم الشحن",
            "",
            "facebook",
        ],
        ["", "", "", ""],
        ["2024-01-16", "Sara", "", "٠١١٩٨٧٦٥٤٣٢"],
    ]
    rows = parse_sheet_rows(values)
    assert len(rows) == 2

    first, second = rows
    assert first.order_id == "AHM-5678-240115"
    assert first.row_index == 2
    assert first.status == "تم الشحن"
    assert first.total_price == Decimal("1250")
    assert first.product_name == "Serum"
    assert first.governorate == "القاهرة"
    assert first.notes is None
    assert first.source_channel == "facebook"

    assert second.row_index == 4
    assert second.status == ""
    assert second.order_id == "SAR-5432-240116"
    assert second.whatsapp_raw == "٠١١٩٨٧٦٥٤٣٢"
    assert second.total_price is None


def test_parse_price() -> None:
    assert parse_price("٣٥٠") == Decimal("350")
    assert parse_price("199.99 EGP") == Decimal("199.99")
    assert parse_price("") is None
    assert parse_price("غير متاح") is None


def test_extract_spreadsheet_id() -> None:
    url = "https://docs.google.com/spreadsheets/d/1AbC-dEf_123/edit#gid=0"
    assert extract_spreadsheet_id(url) == "1AbC-dEf_123"
    assert extract_spreadsheet_id("1AbC-dEf_123") == "1AbC-dEf_123"
    assert extract_spreadsheet_id("https://example.com/not-a-sheet") == ""


def test_parse_service_account_key_accepts_json_and_base64() -> None:
    raw = json.dumps({"client_email": "a@b.c", "private_key": "pem"})
    assert parse_service_account_key(raw)["client_email"] == "a@b.c"
    encoded = base64.b64encode(raw.encode("utf-8")).decode("ascii")
    assert parse_service_account_key(encoded)["private_key"] == "pem"


@pytest.mark.parametrize(
    "raw",
    ["", "not-base64!!", json.dumps({"client_email": "a@b.c"}), json.dumps(["x"])],
)
def test_parse_service_account_key_rejects_bad_keys(raw: str) -> None:
    with pytest.raises(ConfigurationError):
        parse_service_account_key(raw)


def test_check_configuration_requires_sheet_id() -> None:
    source = GoogleSheetsSource(spreadsheet_id="", service_account_key="")
    with pytest.raises(ConfigurationError):
        source.check_configuration()


def test_fetch_rows_exchanges_signed_assertion(monkeypatch, service_account) -> None:
    key = {name: value for name, value in service_account.items() if name != "public_key"}
    requests: list = []

    def fake_urlopen(req, timeout):
        requests.append(req)
        if req.full_url == key["token_uri"]:
            return _Response({"access_token": "token-1", "expires_in": 3600})
        return _Response({"values": [HEADER, ["2024-01-15", "Ahmed", "01012345678"]]})

    monkeypatch.setattr(sheets.request, "urlopen", fake_urlopen)
    source = GoogleSheetsSource(
        spreadsheet_id="sheet-1",
        service_account_key=json.dumps(key),
        clock=lambda: 1_700_000_000.0,
    )

    rows = source.fetch_rows()
    assert [row.name for row in rows] == ["Ahmed"]
    source.fetch_rows()
    assert len(requests) == 3

    token_request, values_request = requests[0], requests[1]
    form = dict(item.split("=", 1) for item in token_request.data.decode("utf-8").split("&"))
    claims = jwt.decode(
        form["assertion"],
        service_account["public_key"],
        algorithms=["RS256"],
        audience=key["token_uri"],
        options={"verify_exp": False, "verify_iat": False},
    )
    assert claims["iss"] == key["client_email"]
    assert "spreadsheets.readonly" in claims["scope"]
    assert values_request.get_header("Authorization") == "Bearer token-1"
    assert "/sheet-1/values/" in values_request.full_url


@pytest.mark.parametrize(
    ("code", "error"),
    [(503, TransientNetworkError), (403, ConfigurationError)],
)
def test_fetch_rows_maps_http_errors(monkeypatch, code, error) -> None:
    def fake_urlopen(req, timeout):
        raise HTTPError(req.full_url, code, "error", None, io.BytesIO(b""))

    monkeypatch.setattr(sheets.request, "urlopen", fake_urlopen)
    source = GoogleSheetsSource(spreadsheet_id="sheet-1", service_account_key="{}")
    monkeypatch.setattr(source, "check_configuration", lambda: None)
    monkeypatch.setattr(source, "_access_token", lambda: "token-1")

    with pytest.raises(error):
        source.fetch_rows()
