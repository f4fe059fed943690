"""Days-out filter expressions for narrowing the candidate list."""

from __future__ import annotations

import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Literal

from .candidates import Candidate
from .log_config import get_logger

FILTER_PATTERN = re.compile(r"^\s*([><]=?|=)\s*(\d+)\s*$")
FAILING_GRADE_THRESHOLD = 60.0

FilterKind = Literal["all", "compare", "fallback"]

_COMPARATORS: dict[str, Callable[[int, int], bool]] = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
    "=": operator.eq,
}

logger = get_logger("filter")


@dataclass(slots=True, frozen=True)
class FilterExpression:
    """Parsed filter; `fallback` means the raw text was malformed and acts like `all`."""

    kind: FilterKind
    raw: str
    op: str | None = None
    value: int | None = None
    reason: str | None = None

    @property
    def is_filtering(self) -> bool:
        return self.kind == "compare"

    def matches(self, candidate: Candidate, *, include_failing: bool = False) -> bool:
        if not self.is_filtering or self.op is None or self.value is None:
            return True
        days_out = candidate.days_out
        if days_out is not None and _COMPARATORS[self.op](days_out, self.value):
            return True
        return include_failing and candidate.grade is not None and candidate.grade < FAILING_GRADE_THRESHOLD

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "raw": self.raw,
            "op": self.op,
            "value": self.value,
            "reason": self.reason,
        }


def parse_filter_expression(raw: str | None) -> FilterExpression:
    text = str(raw or "").strip().lower()
    if text in {"", "all"}:
        return FilterExpression(kind="all", raw=text or "all")

    match = FILTER_PATTERN.match(text)
    if match is None:
        reason = f"unrecognized filter expression `{text}`"
        logger.warning("%s; monitoring the full list", reason)
        return FilterExpression(kind="fallback", raw=text, reason=reason)
    return FilterExpression(kind="compare", raw=text, op=match.group(1), value=int(match.group(2)))


def filter_candidates(
    candidates: Iterable[Candidate],
    expression: str | FilterExpression | None,
    *,
    include_failing: bool = False,
) -> list[Candidate]:
    """Return candidates satisfying `expression`, preserving input order."""
    parsed = expression if isinstance(expression, FilterExpression) else parse_filter_expression(expression)
    items = list(candidates)
    if not parsed.is_filtering:
        return items
    return [item for item in items if parsed.matches(item, include_failing=include_failing)]
