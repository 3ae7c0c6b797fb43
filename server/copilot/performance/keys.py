"""
Deterministic key derivation for deduplication and caching.

Keys are SHA-256 digests of a canonical JSON rendering of the inputs that
determine an operation's result, so identical inputs always collapse and
distinct inputs never collide in practice.
"""

import hashlib
import json
from typing import Any, Dict, Optional


def normalize_query(query: str) -> str:
    """Lowercase and collapse whitespace"""
    return " ".join(query.lower().split())


def hash_payload(payload: Any, prefix: Optional[str] = None) -> str:
    """Hash any JSON-serializable payload, optionally namespaced by prefix"""
    data = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    digest = hashlib.sha256(data.encode("utf-8")).hexdigest()
    return f"{prefix}:{digest}" if prefix else digest


def query_key(
    query: str,
    mode: str,
    options: Optional[Dict[str, Any]] = None,
    prefix: Optional[str] = None
) -> str:
    """Key for a (normalized query, mode, options) tuple"""
    return hash_payload(
        {"query": normalize_query(query), "mode": mode, "options": options or {}},
        prefix=prefix
    )


def http_request_key(
    url: str,
    method: str = "GET",
    body: Any = None,
    headers: Optional[Dict[str, str]] = None
) -> str:
    """Key for an HTTP request (URL + method + body + headers)"""
    return hash_payload(
        {
            "url": url,
            "method": method.upper(),
            "body": body,
            "headers": headers or {},
        },
        prefix="http"
    )
