"""Details sanitization for audit entries.

The details map is schema-flexible but must never carry raw PHI. This module
provides:
- hash_reference: Salted one-way SHA-256 reference for an identifying value
- redact_details: Replace sensitive keys with references or placeholders
- normalize_operational_fields: Move mistyped operational keys aside
- enforce_details_size: Collapse oversized details into a hash reference
- sanitize_details: All of the above, in order
"""

import copy
import hashlib
import json
import logging
import math
from collections.abc import Callable
from typing import Any

from shield_audit.audit.config import MAX_DETAILS_SIZE_BYTES, REDACTION_RULES, SECRET_FIELDS

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# Operational keys kept when details are collapsed to a reference.
OPERATIONAL_KEYS: tuple[str, ...] = (
    "duration_ms",
    "api_endpoint",
    "http_method",
    "response_status",
    "cache_hit",
    "session_id",
    "request_id",
    "record_count",
)


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_str(value: Any) -> bool:
    return isinstance(value, str)


def _is_bool(value: Any) -> bool:
    return isinstance(value, bool)


# The query path casts these keys, so their stored type must match.
OPERATIONAL_FIELD_TYPES: dict[str, Callable[[Any], bool]] = {
    "duration_ms": _is_number,
    "response_status": _is_int,
    "record_count": _is_int,
    "cache_hit": _is_bool,
    "api_endpoint": _is_str,
    "http_method": _is_str,
    "session_id": _is_str,
    "request_id": _is_str,
}

INVALID_SUFFIX = "_invalid"


def hash_reference(value: Any, salt: str = "") -> str:
    """Return a searchable but irreversible reference for ``value``.

    Args:
        value: The identifying value (serialized with str()).
        salt: Deployment salt mixed into the digest.

    Returns:
        A string of the form "sha256:<hex digest>".
    """
    digest = hashlib.sha256(f"{value}{salt}".encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def _sensitive_fields(resource_type: str) -> set[str]:
    fields: set[str] = set()
    if resource_type in REDACTION_RULES:
        fields.update(REDACTION_RULES[resource_type])
    if "*" in REDACTION_RULES:
        fields.update(REDACTION_RULES["*"])
    return fields


def _redact_value(value: Any, sensitive: set[str], key: str, salt: str) -> Any:
    # A sensitive key covers everything beneath it, containers included.
    if key.lower() in sensitive and value is not None:
        if key.lower() in SECRET_FIELDS:
            return REDACTED
        if isinstance(value, str) and value.startswith("sha256:"):
            return value
        if isinstance(value, (dict, list)):
            return hash_reference(json.dumps(value, sort_keys=True, default=str), salt)
        return hash_reference(value, salt)
    if isinstance(value, dict):
        return {k: _redact_value(v, sensitive, k, salt) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact_value(item, sensitive, key, salt) for item in value]
    return value


def redact_details(details: dict | None, resource_type: str, salt: str = "") -> dict:
    """Replace sensitive keys in a details map.

    Secrets (passwords, tokens) become "[REDACTED]". Identifying values become
    salted hash references, so equal values still match each other.

    Args:
        details: The producer-supplied map (None gives an empty map).
        resource_type: Resource type used to pick redaction rules.
        salt: Salt for hash references.

    Returns:
        A sanitized deep copy.
    """
    if not details:
        return {}
    sensitive = _sensitive_fields(resource_type)
    result = copy.deepcopy(details)
    return {k: _redact_value(v, sensitive, k, salt) for k, v in result.items()}


def normalize_operational_fields(details: dict) -> tuple[dict, list[str]]:
    """Move operational keys holding the wrong type to ``<key>_invalid``.

    ``None`` values are dropped. Returns (details, moved keys).
    """
    result = dict(details)
    moved: list[str] = []
    for key, is_valid in OPERATIONAL_FIELD_TYPES.items():
        if key not in result:
            continue
        value = result.pop(key)
        if value is None:
            continue
        if is_valid(value):
            result[key] = value
        else:
            if isinstance(value, float):
                value = str(value)
            result[f"{key}{INVALID_SUFFIX}"] = value
            moved.append(key)
    return result, moved


def enforce_details_size(details: dict) -> tuple[dict, bool]:
    """Collapse an oversized details map into a reference.

    Returns:
        Tuple of (details, truncated). When the serialized map exceeds
        MAX_DETAILS_SIZE_BYTES, the result keeps the operational keys and
        adds ``details_hash`` and ``details_size``.
    """
    serialized = json.dumps(details, sort_keys=True, default=str).encode("utf-8")
    if len(serialized) <= MAX_DETAILS_SIZE_BYTES:
        # Round-trip so the stored map only holds JSON types.
        return json.loads(serialized), False

    reduced = {key: details[key] for key in OPERATIONAL_KEYS if key in details}
    reduced["details_hash"] = hashlib.sha256(serialized).hexdigest()
    reduced["details_size"] = len(serialized)
    reduced["details_truncated"] = True
    return reduced, True


def sanitize_details(details: dict | None, resource_type: str, salt: str = "") -> tuple[dict, bool]:
    """Redact, normalize operational keys, then enforce the size limit.

    Returns (details, truncated).
    """
    normalized, moved = normalize_operational_fields(redact_details(details, resource_type, salt))
    if moved:
        logger.warning(f"Moved mistyped operational details aside: {', '.join(moved)}")
    return enforce_details_size(normalized)
