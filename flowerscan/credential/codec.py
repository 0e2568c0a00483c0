# flowerscan/credential/codec.py
"""
Wire shapes of a credential.

Two input forms are accepted:
  - compact JSON: {"sid":"...","exp":1706731200,"sig":"<64 hex>"}
  - any absolute URL whose query string carries sid, exp and sig

decode() never raises on bad input. It only answers "is there a payload in
here"; whether the field types are right is decided by CredentialService.
"""
from __future__ import annotations
from typing import Any, Optional, TypedDict
from urllib.parse import urlencode, urlsplit, parse_qs

import orjson

FIELDS = ("sid", "exp", "sig")
MAX_CREDENTIAL_LENGTH = 2000


class CredentialPayload(TypedDict):
    sid: str
    exp: int
    sig: str


def _present(value: Any) -> bool:
    return value is not None and value != ""


def _from_mapping(obj: Any) -> Optional[CredentialPayload]:
    if not isinstance(obj, dict):
        return None
    if not all(_present(obj.get(k)) for k in FIELDS):
        return None
    return {"sid": obj["sid"], "exp": obj["exp"], "sig": obj["sig"]}


def _from_json(raw: str) -> Optional[CredentialPayload]:
    try:
        obj = orjson.loads(raw)
    except orjson.JSONDecodeError:
        return None
    return _from_mapping(obj)


def _canonical_decimal(text: str) -> bool:
    if not (text.isascii() and text.isdigit()):
        return False
    return text == "0" or not text.startswith("0")


def _from_url(raw: str) -> Optional[CredentialPayload]:
    try:
        parts = urlsplit(raw.strip())
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    query = parse_qs(parts.query)
    fields = {k: query[k][0] for k in FIELDS if query.get(k)}
    exp = fields.get("exp")
    # the URL form only carries text; anything but a canonical decimal
    # (no sign, no leading zeros) stays text and fails the type check later
    if exp is not None and _canonical_decimal(exp):
        fields["exp"] = int(exp)
    return _from_mapping(fields)


def decode(
    raw: Any, max_length: int = MAX_CREDENTIAL_LENGTH
) -> Optional[CredentialPayload]:
    if not isinstance(raw, str) or not raw:
        return None
    if len(raw) > max_length:
        return None
    return _from_json(raw) or _from_url(raw)


def encode(payload: CredentialPayload) -> str:
    return orjson.dumps({
        "sid": payload["sid"],
        "exp": payload["exp"],
        "sig": payload["sig"],
    }).decode()


def to_url(base_url: str, payload: CredentialPayload) -> str:
    sep = "&" if "?" in base_url else "?"
    query = urlencode({k: payload[k] for k in FIELDS})
    return f"{base_url}{sep}{query}"
