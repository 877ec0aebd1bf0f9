# http_utils.py
# API Gateway (proxy integration) request/response helpers shared by the handlers.

import base64
import json
from decimal import Decimal
from typing import Any, Dict, Optional


def _json_decimal(o):
    if isinstance(o, Decimal):
        return int(o) if o == o.to_integral_value() else float(o)
    raise TypeError(f"Object of type {type(o).__name__} is not JSON serializable")


def cors_headers(methods: str, allow_headers: str = "Content-Type") -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": methods,
        "Access-Control-Allow-Headers": allow_headers,
    }


def resp(status: int, body: Any, headers: Dict[str, str]) -> Dict[str, Any]:
    return {
        "statusCode": status,
        "headers": headers,
        "body": "" if body is None else json.dumps(body, default=_json_decimal),
    }


def method_of(event: Dict[str, Any]) -> str:
    return (event.get("httpMethod") or "").upper()


def query(event: Dict[str, Any]) -> Dict[str, str]:
    qs = event.get("queryStringParameters")
    return qs if isinstance(qs, dict) else {}


def header(event: Dict[str, Any], name: str) -> Optional[str]:
    """Case-insensitive header lookup (API Gateway preserves client casing)."""
    wanted = name.lower()
    for k, v in (event.get("headers") or {}).items():
        if str(k).lower() == wanted:
            return v
    return None


def raw_body(event: Dict[str, Any]) -> str:
    raw = event.get("body") or ""
    if isinstance(raw, (dict, list)):
        return json.dumps(raw)
    if event.get("isBase64Encoded") and raw:
        raw = base64.b64decode(raw).decode("utf-8")
    return raw


def parse_json_body(event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Decode the request body as a JSON object. An absent body is {}.
    Raises ValueError for invalid JSON or a non-object document.
    """
    body = event.get("body")
    if isinstance(body, dict):
        return body
    raw = raw_body(event) or "{}"
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON body: {e}")
    if not isinstance(data, dict):
        raise ValueError("JSON body must be an object")
    return data
