"""Identifier and configuration rules shared by the compiler and the API."""
import re
from typing import Iterable, List, Optional

KEY_MAX_LENGTH = 64
KEY_MIN_LENGTH = 2
APP_IDENTIFIER_MAX_LENGTH = 128

# lowercase segments joined by "/", no leading/trailing underscore in a segment
_SEGMENT = r"[a-z0-9](?:[a-z0-9_]*[a-z0-9])?"
_KEY_RE = re.compile(rf"^{_SEGMENT}(?:/{_SEGMENT})*$")
_APP_IDENTIFIER_RE = re.compile(r"^[a-z0-9._-]+$")
VERSION_RE = re.compile(r"^\d{4}-\d{2}-\d{2}\.\d+$")


def identifier_key_error(key: Optional[str]) -> Optional[str]:
    """Return why ``key`` is not a valid flag/cohort/experiment key, or None."""
    if not key:
        return "Key cannot be empty"
    if len(key) > KEY_MAX_LENGTH:
        return f"Key cannot exceed {KEY_MAX_LENGTH} characters"
    if len(key) < KEY_MIN_LENGTH:
        return f"Key must be at least {KEY_MIN_LENGTH} characters long"
    if not _KEY_RE.match(key):
        return (
            "Key must be lowercase letters, digits and underscores, optionally namespaced "
            "with '/', and segments cannot start or end with an underscore"
        )
    return None


def app_identifier_error(identifier: Optional[str]) -> Optional[str]:
    if not identifier:
        return "App identifier cannot be empty"
    if len(identifier) > APP_IDENTIFIER_MAX_LENGTH:
        return f"App identifier cannot exceed {APP_IDENTIFIER_MAX_LENGTH} characters"
    if not _APP_IDENTIFIER_RE.match(identifier):
        return "App identifier must contain only lowercase letters, numbers, dots, underscores, and hyphens"
    if identifier.startswith(".") or ".." in identifier:
        return "App identifier cannot start with a dot or contain '..'"
    return None


def is_valid_version(version: str) -> bool:
    return bool(VERSION_RE.match(version or ""))


def percentage_error(value, label: str) -> Optional[str]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return f"{label} percentage must be a number, got {value!r}"
    if value < 0 or value > 100:
        return f"{label} percentage must be between 0 and 100, got {value}"
    return None


def traffic_split_error(percentages: Iterable[float], label: str) -> Optional[str]:
    values = list(percentages)
    if not values:
        return f"{label} must define at least one variant"
    total = sum(values)
    if abs(total - 100) > 1e-9:
        return f"{label} variant traffic splits must sum to 100, got {total:g}"
    return None


def cohort_references(conditions: Iterable[dict]) -> List[str]:
    refs: List[str] = []
    for condition in conditions or []:
        if isinstance(condition, dict) and condition.get("type") == "cohort":
            refs.extend(str(v) for v in condition.get("values") or [])
    return refs
