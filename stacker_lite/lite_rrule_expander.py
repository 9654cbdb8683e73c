"""RRULE parsing, formatting and expansion for stacker_lite.

This module is the only place where recurrence rule strings are read or
written. Everything else in the engine works on ``RecurrencePattern``.
Dates are timezone-less calendar days; occurrences are generated at local
midnight of the rule's start date and reported as plain ``date`` objects.
"""

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from functools import lru_cache
from typing import Any, Union

from dateutil.rrule import DAILY, FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, YEARLY, rrule
from pydantic import ValidationError

from .lite_exceptions import RuleParseError
from .lite_models import Frequency, RecurrencePattern, Weekday

logger = logging.getLogger(__name__)

RuleLike = Union[str, RecurrencePattern]

_DATEUTIL_FREQUENCIES = {
    Frequency.DAILY: DAILY,
    Frequency.WEEKLY: WEEKLY,
    Frequency.MONTHLY: MONTHLY,
    Frequency.YEARLY: YEARLY,
}

_DATEUTIL_WEEKDAYS = {
    Weekday.MO: MO,
    Weekday.TU: TU,
    Weekday.WE: WE,
    Weekday.TH: TH,
    Weekday.FR: FR,
    Weekday.SA: SA,
    Weekday.SU: SU,
}

# UNTIL accepts a date or a date-time (optionally UTC); only the day is kept.
_UNTIL_RE = re.compile(r"^(\d{8})(?:T(\d{6})Z?)?$")


@dataclass
class RRuleExpanderConfig:
    """Configuration for RRULE expansion."""

    max_occurrences_per_rule: int = 1000

    @classmethod
    def from_settings(cls, settings: Any) -> "RRuleExpanderConfig":
        """Extract expansion settings from a config object, falling back to defaults."""
        return cls(
            max_occurrences_per_rule=getattr(settings, "max_occurrences_per_rule", 1000),
        )


def _parse_positive_int(key: str, value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise RuleParseError(f"{key} must be an integer, got {value!r}") from exc
    if number < 1:
        raise RuleParseError(f"{key} must be positive, got {number}")
    return number


def _parse_until(value: str) -> date:
    match = _UNTIL_RE.match(value)
    if not match:
        raise RuleParseError(f"Malformed UNTIL value {value!r}")
    try:
        return datetime.strptime(match.group(1), "%Y%m%d").date()
    except ValueError as exc:
        raise RuleParseError(f"Invalid UNTIL date {value!r}") from exc


def _parse_weekdays(value: str) -> tuple[Weekday, ...]:
    days = []
    for token in value.split(","):
        token = token.strip().upper()
        try:
            days.append(Weekday(token))
        except ValueError as exc:
            raise RuleParseError(f"Unknown BYDAY weekday {token!r}") from exc
    return tuple(days)


@lru_cache(maxsize=512)
def parse_rule(rule_string: str) -> RecurrencePattern:
    """Parse an RRULE string into a ``RecurrencePattern``.

    Supports FREQ, INTERVAL, BYDAY (weekly only), UNTIL and COUNT. An
    ``RRULE:`` prefix is tolerated. Results are memoized per rule string.

    Raises:
        RuleParseError: If the string is empty, malformed or uses an
            unsupported component (including an embedded DTSTART).
    """
    if not rule_string or not rule_string.strip():
        raise RuleParseError("Empty RRULE string")

    text = rule_string.strip()
    if text.upper().startswith("RRULE:"):
        text = text[len("RRULE:"):]

    components: dict[str, str] = {}
    for part in text.split(";"):
        part = part.strip()
        if not part:
            continue
        if "=" not in part:
            raise RuleParseError(f"Malformed RRULE component {part!r} in {rule_string!r}")
        key, value = part.split("=", 1)
        key = key.strip().upper()
        if key in components:
            raise RuleParseError(f"Duplicate RRULE component {key} in {rule_string!r}")
        components[key] = value.strip()

    if "DTSTART" in components:
        raise RuleParseError("DTSTART must not be embedded in the rule; the task date is the start")

    unsupported = set(components) - {"FREQ", "INTERVAL", "BYDAY", "UNTIL", "COUNT", "WKST"}
    if unsupported:
        raise RuleParseError(f"Unsupported RRULE components: {', '.join(sorted(unsupported))}")

    freq = components.get("FREQ", "").upper()
    if not freq:
        raise RuleParseError(f"RRULE missing required FREQ parameter: {rule_string!r}")
    try:
        frequency = Frequency(freq)
    except ValueError as exc:
        raise RuleParseError(f"Unsupported FREQ {freq!r}") from exc

    fields: dict[str, Any] = {"frequency": frequency}
    if "INTERVAL" in components:
        fields["interval"] = _parse_positive_int("INTERVAL", components["INTERVAL"])
    if "COUNT" in components:
        fields["count"] = _parse_positive_int("COUNT", components["COUNT"])
    if "UNTIL" in components:
        fields["until"] = _parse_until(components["UNTIL"])
    if "BYDAY" in components:
        fields["weekdays"] = _parse_weekdays(components["BYDAY"])

    try:
        return RecurrencePattern(**fields)
    except ValidationError as exc:
        raise RuleParseError(f"Invalid RRULE {rule_string!r}: {exc.errors()[0]['msg']}") from exc


def format_rule(pattern: RecurrencePattern) -> str:
    """Serialize a pattern to its canonical RRULE string.

    Component order is FREQ, INTERVAL, BYDAY, UNTIL, COUNT. INTERVAL is
    omitted when it is 1 and UNTIL is written as the end of the UTC day.
    """
    parts = [f"FREQ={pattern.frequency.value}"]
    if pattern.interval != 1:
        parts.append(f"INTERVAL={pattern.interval}")
    if pattern.weekdays:
        parts.append("BYDAY=" + ",".join(day.value for day in pattern.weekdays))
    if pattern.until is not None:
        parts.append(f"UNTIL={pattern.until.strftime('%Y%m%d')}T235959Z")
    if pattern.count is not None:
        parts.append(f"COUNT={pattern.count}")
    return ";".join(parts)


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time.min)


def build_rrule(pattern: RecurrencePattern, dtstart: date) -> rrule:
    """Build a naive dateutil ``rrule`` anchored at local midnight of ``dtstart``."""
    return rrule(
        _DATEUTIL_FREQUENCIES[pattern.frequency],
        dtstart=_midnight(dtstart),
        interval=pattern.interval,
        byweekday=[_DATEUTIL_WEEKDAYS[day] for day in pattern.weekdays] if pattern.weekdays else None,
        until=datetime.combine(pattern.until, time(23, 59, 59)) if pattern.until else None,
        count=pattern.count,
    )


class RuleExpander:
    """Expands recurrence rules into occurrence dates within inclusive windows.

    COUNT is always counted from the rule start, so a window far into the
    series yields only what remains of the count. Expansion is lazy,
    restartable and capped at ``max_occurrences_per_rule`` per call.
    """

    def __init__(self, settings: Any = None):
        config = RRuleExpanderConfig.from_settings(settings)
        self.max_occurrences = config.max_occurrences_per_rule

    def parse(self, rule: RuleLike) -> RecurrencePattern:
        """Return ``rule`` as a pattern, parsing strings (memoized)."""
        if isinstance(rule, RecurrencePattern):
            return rule
        return parse_rule(rule)

    def iter_occurrences(
        self, rule: RuleLike, dtstart: date, window_start: date, window_end: date
    ) -> Iterator[date]:
        """Lazily yield occurrence dates in ``[window_start, window_end]``.

        Raises:
            RuleParseError: If ``rule`` is a malformed string.
        """
        pattern = self.parse(rule)
        if window_end < window_start:
            return
        recurrence = build_rrule(pattern, dtstart)
        emitted = 0
        for occurrence in recurrence.xafter(_midnight(window_start), inc=True):
            day = occurrence.date()
            if day > window_end:
                break
            if emitted >= self.max_occurrences:
                logger.warning(
                    "Expansion of %s from %s hit max_occurrences=%d before %s",
                    format_rule(pattern),
                    dtstart,
                    self.max_occurrences,
                    window_end,
                )
                break
            emitted += 1
            yield day

    def expand(self, rule: RuleLike, dtstart: date, window_start: date, window_end: date) -> list[date]:
        """Return the occurrence dates in ``[window_start, window_end]``."""
        return list(self.iter_occurrences(rule, dtstart, window_start, window_end))

    def occurs_on(self, rule: RuleLike, dtstart: date, day: date) -> bool:
        """Whether the rule has an occurrence on ``day``."""
        return bool(self.expand(rule, dtstart, day, day))

    def count_before(self, rule: RuleLike, dtstart: date, target: date) -> int:
        """Number of occurrences strictly before ``target``."""
        pattern = self.parse(rule)
        if target <= dtstart:
            return 0
        recurrence = build_rrule(pattern, dtstart)
        return len(recurrence.between(_midnight(dtstart), _midnight(target - timedelta(days=1)), inc=True))

    def clamp_until(self, rule: RuleLike, target: date) -> RecurrencePattern:
        """End the series on the day before ``target``.

        Drops COUNT and keeps an existing UNTIL when it is already earlier.
        """
        pattern = self.parse(rule)
        cutoff = target - timedelta(days=1)
        until = pattern.until if pattern.until is not None and pattern.until <= cutoff else cutoff
        return pattern.model_copy(update={"until": until, "count": None})
