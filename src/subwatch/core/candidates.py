"""Candidate records built from imported student entries."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

IDENTIFIER_KEYS = ("identifier", "id", "SyStudentId")
TARGET_URL_KEYS = ("targetUrl", "target_url", "url", "Gradebook")
DAYS_OUT_KEYS = ("daysOut", "days_out")
_ACTIONABLE_SCHEMES = {"http", "https"}


def _first_present(entry: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = entry.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _coerce_days_out(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float):
        return int(value) if value.is_integer() and value >= 0 else None
    if isinstance(value, str):
        raw = value.strip()
        return int(raw) if raw.isdigit() else None
    return None


def _coerce_grade(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        raw = value.strip().rstrip("%").strip()
        if not raw:
            return None
        try:
            return float(raw)
        except ValueError:
            return None
    return None


def is_actionable_url(url: str | None) -> bool:
    """Return True for absolute http(s) URLs with a host."""
    if not isinstance(url, str) or not url.strip():
        return False
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return False
    return parts.scheme.lower() in _ACTIONABLE_SCHEMES and bool(parts.netloc)


def normalize_target_url(url: str | None, host_aliases: dict[str, str] | None = None) -> str | None:
    """Rewrite legacy hosts to their current name; other URLs pass through."""
    if not isinstance(url, str):
        return None
    clean = url.strip()
    if not clean or not host_aliases or not is_actionable_url(clean):
        return clean or None
    parts = urlsplit(clean)
    host = (parts.hostname or "").lower()
    replacement = None
    for legacy, current in host_aliases.items():
        if isinstance(legacy, str) and isinstance(current, str) and legacy.strip().lower() == host:
            replacement = current.strip()
            break
    if not replacement:
        return clean
    netloc = replacement if parts.port is None else f"{replacement}:{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def with_query_params(url: str, params: dict[str, str]) -> str:
    """Return `url` with `params` set, replacing any existing values for those keys."""
    parts = urlsplit(url)
    query = [(key, val) for key, val in parse_qsl(parts.query, keep_blank_values=True) if key not in params]
    query.extend(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


@dataclass(slots=True, frozen=True)
class Candidate:
    """One monitorable record; read-only for the duration of a sweep."""

    identifier: str | None
    target_url: str | None
    days_out: int | None = None
    grade: float | None = None
    name: str | None = None
    entry: dict[str, Any] = field(default_factory=dict, compare=False, hash=False, repr=False)

    @classmethod
    def from_entry(cls, entry: dict[str, Any], *, host_aliases: dict[str, str] | None = None) -> "Candidate":
        identifier = _first_present(entry, IDENTIFIER_KEYS)
        raw_url = _first_present(entry, TARGET_URL_KEYS)
        name = entry.get("name")
        return cls(
            identifier=str(identifier).strip() if identifier is not None else None,
            target_url=normalize_target_url(raw_url if isinstance(raw_url, str) else None, host_aliases),
            days_out=_coerce_days_out(_first_present(entry, DAYS_OUT_KEYS)),
            grade=_coerce_grade(entry.get("grade")),
            name=name.strip() if isinstance(name, str) and name.strip() else None,
            entry=dict(entry),
        )

    @property
    def dedup_key(self) -> str | None:
        return self.target_url

    @property
    def label(self) -> str:
        return self.name or self.identifier or self.target_url or "<unnamed>"

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "target_url": self.target_url,
            "days_out": self.days_out,
            "grade": self.grade,
            "name": self.name,
        }


def build_candidates(entries: list[Any], *, host_aliases: dict[str, str] | None = None) -> list[Candidate]:
    """Build candidates in list order; non-dict rows are dropped."""
    return [Candidate.from_entry(item, host_aliases=host_aliases) for item in entries if isinstance(item, dict)]
