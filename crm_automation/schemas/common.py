import json
import re
from typing import Any

from pydantic import BaseModel, ConfigDict


class PaginationMeta(BaseModel):
    total: int
    limit: int
    offset: int
    count: int
    has_next: bool

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "total": 42,
                "limit": 10,
                "offset": 0,
                "count": 10,
                "has_next": True,
            }
        }
    )


class ValidationIssueOut(BaseModel):
    field: str
    message: str
    type: str | None = None


class ErrorDetailOut(BaseModel):
    code: str
    message: str
    request_id: str
    path: str
    details: list[ValidationIssueOut] | None = None


class ErrorOut(BaseModel):
    error: ErrorDetailOut

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": {
                    "code": "bad_request",
                    "message": "X-Business-Id header is required",
                    "request_id": "8d8f2b00-6c79-4a45-8ff4-b0a5f2bc4bc2",
                    "path": "/webhooks/subscriptions",
                    "details": None,
                }
            }
        }
    )


def pagination(*, total: int, limit: int, offset: int, count: int) -> PaginationMeta:
    return PaginationMeta(
        total=total,
        limit=limit,
        offset=offset,
        count=count,
        has_next=(offset + count) < total,
    )


# RFC 7230 field-name token and visible ASCII field-value
_HEADER_NAME_RE = re.compile(r"[!#$%&'*+.^_`|~0-9A-Za-z-]+")
_HEADER_VALUE_RE = re.compile(r"[\t\x20-\x7e]*")


def validate_header_map(
    value: dict[str, str] | None,
    *,
    max_entries: int = 20,
    max_name_length: int = 100,
    max_value_length: int = 500,
) -> dict[str, str] | None:
    if value is None:
        return None
    if len(value) > max_entries:
        raise ValueError(f"At most {max_entries} headers are allowed")
    cleaned: dict[str, str] = {}
    for name, header_value in value.items():
        key = str(name).strip()
        if not key:
            raise ValueError("Header names must not be empty")
        if len(key) > max_name_length:
            raise ValueError(f"Header name '{key[:20]}...' exceeds {max_name_length} characters")
        if not isinstance(header_value, str):
            raise ValueError(f"Header '{key}' must have a string value")
        if len(header_value) > max_value_length:
            raise ValueError(f"Header '{key}' exceeds {max_value_length} characters")
        if "\n" in key or "\r" in key or "\n" in header_value or "\r" in header_value:
            raise ValueError(f"Header '{key}' must not contain line breaks")
        if not _HEADER_NAME_RE.fullmatch(key):
            raise ValueError(f"Header name '{key}' contains invalid characters")
        if not _HEADER_VALUE_RE.fullmatch(header_value):
            raise ValueError(f"Header '{key}' must contain printable ASCII characters only")
        cleaned[key] = header_value
    return cleaned


def validate_json_map(
    value: dict[str, Any] | None,
    *,
    max_entries: int = 50,
    max_bytes: int = 16384,
) -> dict[str, Any] | None:
    if value is None:
        return None
    if len(value) > max_entries:
        raise ValueError(f"At most {max_entries} keys are allowed")
    try:
        encoded = json.dumps(value, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise ValueError("Value must be JSON serializable") from exc
    if len(encoded.encode("utf-8")) > max_bytes:
        raise ValueError(f"Serialized value exceeds {max_bytes} bytes")
    return value
