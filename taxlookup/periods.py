"""Fiscal calendar, application deadlines and phase classification.

Boston's fiscal year runs July 1 to June 30 and is named after the calendar
year in which it ends (July 1, 2025 - June 30, 2026 is FY2026). Within a
calendar year the application cycles are anchored on a handful of fixed
milestones:

- Jan 1: new application period begins
- Feb 1 (next Monday if on a weekend): abatement application deadline
- abatement deadline + 28 days: abatement grace period deadline
- Mar 1: exemptions in progress
- Apr 1 (next Monday if on a weekend): exemption application deadline
- Jul 1: new fiscal year, preliminary tax period begins

Nothing in this module reads the system clock. Every function takes the
moment being classified as an argument so callers can "time travel".
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Callable, NamedTuple

# Months are 1-indexed here (July == 7)
FISCAL_YEAR_START_MONTH = 7
ABATEMENT_GRACE_PERIOD_DAYS = 28


def _as_datetime(value: date | datetime) -> datetime:
    """Promote a plain date to local midnight so it compares with anchors."""
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day)


def next_monday(value: datetime) -> datetime:
    """Shift a weekend date forward to the following Monday.

    Saturday moves two days, Sunday one day, weekdays are returned unchanged.
    """
    weekday = value.weekday()  # Monday == 0, Sunday == 6
    if weekday == 5:
        return value + timedelta(days=2)
    if weekday == 6:
        return value + timedelta(days=1)
    return value


# =============================================================================
# Temporal anchors
# =============================================================================


@dataclass(frozen=True)
class TemporalAnchor:
    """A named fiscal milestone that resolves to a date for any calendar year."""

    key: str
    label: str
    resolver: Callable[[int], datetime]

    def resolve(self, year: int) -> datetime:
        return self.resolver(year)


def _abatement_deadline(year: int) -> datetime:
    return next_monday(datetime(year, 2, 1))


NEW_APPLICATION_PERIOD_BEGINS = TemporalAnchor(
    key="new_application_period_begins",
    label="New application period begins",
    resolver=lambda year: datetime(year, 1, 1),
)

ABATEMENT_APPLICATION_DEADLINE = TemporalAnchor(
    key="abatement_application_deadline",
    label="Abatement application deadline",
    resolver=_abatement_deadline,
)

ABATEMENT_GRACE_PERIOD_DEADLINE = TemporalAnchor(
    key="abatement_grace_period_deadline",
    label="Abatement grace period deadline",
    resolver=lambda year: _abatement_deadline(year) + timedelta(days=ABATEMENT_GRACE_PERIOD_DAYS),
)

EXEMPTIONS_IN_PROGRESS = TemporalAnchor(
    key="exemptions_in_progress",
    label="Exemptions in progress",
    resolver=lambda year: datetime(year, 3, 1),
)

EXEMPTION_APPLICATION_DEADLINE = TemporalAnchor(
    key="exemption_application_deadline",
    label="Exemption application deadline",
    resolver=lambda year: next_monday(datetime(year, 4, 1)),
)

NEW_FY_PRELIMINARY_TAX_PERIOD_BEGINS = TemporalAnchor(
    key="new_fy_preliminary_tax_period_begins",
    label="New fiscal year preliminary tax period begins",
    resolver=lambda year: datetime(year, FISCAL_YEAR_START_MONTH, 1),
)

TEMPORAL_ANCHORS: tuple[TemporalAnchor, ...] = (
    NEW_APPLICATION_PERIOD_BEGINS,
    ABATEMENT_APPLICATION_DEADLINE,
    ABATEMENT_GRACE_PERIOD_DEADLINE,
    EXEMPTIONS_IN_PROGRESS,
    EXEMPTION_APPLICATION_DEADLINE,
    NEW_FY_PRELIMINARY_TAX_PERIOD_BEGINS,
)


class Timepoint(NamedTuple):
    label: str
    date: datetime


def all_timepoints(year: int) -> list[Timepoint]:
    """All milestones of a calendar year in chronological order.

    The grace deadline lands on or around Mar 1, on either side of it.
    """
    timepoints = [Timepoint(anchor.label, anchor.resolve(year)) for anchor in TEMPORAL_ANCHORS]
    return sorted(timepoints, key=lambda t: t.date)


def current_period(
    now: date | datetime, timepoints: list[Timepoint]
) -> tuple[Timepoint, Timepoint | None]:
    """Return the (from, to) pair of timepoints that brackets ``now``.

    ``to`` is None once ``now`` is past the last timepoint. Dates before the
    first timepoint are reported as starting at the first one.
    """
    now = _as_datetime(now)
    previous = timepoints[0]
    for timepoint in timepoints[1:]:
        if now < timepoint.date:
            return previous, timepoint
        previous = timepoint
    return timepoints[-1], None


def format_date_for_display(value: date | datetime, with_time: bool = False) -> str:
    """Format like ``Monday, February 3, 2025`` (optionally ``at 5:00:00 PM``)."""
    value = _as_datetime(value)
    text = f"{value:%A}, {value:%B} {value.day}, {value.year}"
    if with_time:
        hour = value.hour % 12 or 12
        meridiem = "AM" if value.hour < 12 else "PM"
        text += f" at {hour}:{value.minute:02d}:{value.second:02d} {meridiem}"
    return text


# =============================================================================
# Fiscal period calculation
# =============================================================================


class FiscalPeriod(NamedTuple):
    """A fiscal year plus the EGIS quarter code ("1" for Jul-Dec, "3" for Jan-Jun)."""

    year: int
    quarter: str


def fiscal_year(value: date | datetime) -> int:
    if value.month >= FISCAL_YEAR_START_MONTH:
        return value.year + 1
    return value.year


def quarter(value: date | datetime) -> str:
    return "1" if value.month >= FISCAL_YEAR_START_MONTH else "3"


def fiscal_year_and_quarter(value: date | datetime) -> FiscalPeriod:
    return FiscalPeriod(fiscal_year(value), quarter(value))


def is_preliminary_period(value: date | datetime) -> bool:
    """July through December, while first-half bills are still estimates."""
    return value.month >= FISCAL_YEAR_START_MONTH


def abatement_reference_year(value: date | datetime) -> int:
    """Calendar year whose abatement window governs the fiscal year in effect.

    In July 2026 (FY2027) the FY2027 abatements were due in February 2026, so
    the second half of the year refers to its own calendar year and the first
    half to the previous one.
    """
    return value.year if value.month >= FISCAL_YEAR_START_MONTH else value.year - 1


# =============================================================================
# Phase classification
# =============================================================================


class AbatementPhase(str, Enum):
    OPEN = "open"
    AFTER_DEADLINE = "after_deadline"
    PRELIMINARY = "preliminary"


class ExemptionPhase(str, Enum):
    BEFORE_JAN1 = "before_jan1"
    OPEN = "open"
    AFTER_DEADLINE = "after_deadline"
    PRELIMINARY = "preliminary"


class ExemptionType(str, Enum):
    RESIDENTIAL = "Residential"
    PERSONAL = "Personal"


@dataclass(frozen=True)
class PhaseResult:
    """Outcome of classifying a moment within one application cycle.

    ``message_params`` holds every template variable the content layer needs
    to render the phase message; it is empty only for the fallback branches.
    """

    phase: AbatementPhase | ExemptionPhase
    message_params: dict[str, Any] = field(default_factory=dict)
    deadline: datetime | None = None

    @property
    def is_preliminary(self) -> bool:
        return self.phase.value == "preliminary"


def classify_abatement(
    now: date | datetime, reference_year: int, parcel_id: str | None = None
) -> PhaseResult:
    """Classify ``now`` within the abatement cycle.

    Branch selection uses the calendar year of ``now``; ``reference_year``
    only feeds the message text (which fiscal year's abatements are meant).
    """
    now = _as_datetime(now)
    current_year = now.year

    jan1 = NEW_APPLICATION_PERIOD_BEGINS.resolve(current_year)
    deadline = ABATEMENT_APPLICATION_DEADLINE.resolve(current_year)
    july1 = NEW_FY_PRELIMINARY_TAX_PERIOD_BEGINS.resolve(current_year)
    next_jan1 = NEW_APPLICATION_PERIOD_BEGINS.resolve(current_year + 1)

    if jan1 <= now <= deadline:
        return PhaseResult(
            phase=AbatementPhase.OPEN,
            message_params={
                "next_year": reference_year + 1,
                "deadline_date": format_date_for_display(deadline, with_time=True),
                "current_year": reference_year,
                "parcel_id": parcel_id,
            },
            deadline=deadline,
        )

    if deadline < now < july1:
        return PhaseResult(
            phase=AbatementPhase.AFTER_DEADLINE,
            message_params={
                "next_year": reference_year + 1,
                "current_year": reference_year,
                "deadline_date": format_date_for_display(deadline),
            },
            deadline=deadline,
        )

    if july1 <= now < next_jan1:
        return PhaseResult(
            phase=AbatementPhase.PRELIMINARY,
            message_params={
                "current_fy": current_year + 1,
                "current_year": current_year + 1,
                "next_fy": current_year + 2,
                "next_jan1_date": format_date_for_display(next_jan1),
            },
            deadline=deadline,
        )

    # Unreachable while the windows above tile the calendar year of ``now``
    return PhaseResult(phase=AbatementPhase.PRELIMINARY)


def classify_exemption(
    now: date | datetime, year: int, exemption_type: ExemptionType | str
) -> PhaseResult:
    """Classify ``now`` within the exemption cycle of calendar year ``year``.

    Unlike abatements, ``year`` decides the branch. The deadline instant
    satisfies both ``open`` and ``after_deadline``; ``open`` is checked first.
    """
    now = _as_datetime(now)
    exemption_type = ExemptionType(exemption_type)
    type_label = exemption_type.value

    jan1 = NEW_APPLICATION_PERIOD_BEGINS.resolve(year)
    deadline = EXEMPTION_APPLICATION_DEADLINE.resolve(year)
    july1 = NEW_FY_PRELIMINARY_TAX_PERIOD_BEGINS.resolve(year)
    next_jan1 = NEW_APPLICATION_PERIOD_BEGINS.resolve(year + 1)

    if now < jan1:
        return PhaseResult(
            phase=ExemptionPhase.BEFORE_JAN1,
            message_params={
                "exemption_type": type_label,
                "next_year": year + 1,
                "jan1_date": format_date_for_display(jan1),
                "current_year": year,
            },
        )

    if jan1 <= now <= deadline:
        return PhaseResult(
            phase=ExemptionPhase.OPEN,
            message_params={
                "exemption_type": type_label,
                "next_year": year + 1,
                "deadline_date": format_date_for_display(deadline, with_time=True),
                "current_year": year,
            },
            deadline=deadline,
        )

    if deadline <= now < july1:
        return PhaseResult(
            phase=ExemptionPhase.AFTER_DEADLINE,
            message_params={
                "exemption_type": type_label,
                "next_year": year + 1,
                "deadline_date": format_date_for_display(deadline),
                "next_fy": year + 2,
                "next_jan1_date": format_date_for_display(next_jan1),
                "current_year": year,
            },
            deadline=deadline,
        )

    if july1 <= now < next_jan1:
        return PhaseResult(
            phase=ExemptionPhase.PRELIMINARY,
            message_params={
                "current_fy": year + 1,
                "exemption_type_lower": type_label.lower(),
                "next_fy": year + 2,
                "next_jan1_date": format_date_for_display(next_jan1),
            },
            deadline=deadline,
        )

    # On or after Jan 1 of the following year
    return PhaseResult(phase=ExemptionPhase.BEFORE_JAN1)


# =============================================================================
# Exemption status
# =============================================================================


class ExemptionStatus(str, Enum):
    """What the overview can truthfully say about an exemption."""

    GRANTED = "granted"
    AMOUNT_TO_BE_DECIDED = "amount_to_be_decided"
    NOT_SUBMITTED = "not_submitted"
    NOT_GRANTED = "not_granted"


def exemption_granted(amount: float | int | None) -> bool:
    return bool(amount) and amount > 0


def exemption_status(
    amount: float | int | None, approved: bool, now: date | datetime
) -> ExemptionStatus:
    """Combine the billed amount and application flag into a display status.

    The flag reflects the current fiscal year's application only during the
    preliminary period; outside it only the amount is meaningful.
    """
    if exemption_granted(amount):
        return ExemptionStatus.GRANTED
    if is_preliminary_period(now):
        return ExemptionStatus.AMOUNT_TO_BE_DECIDED if approved else ExemptionStatus.NOT_SUBMITTED
    return ExemptionStatus.NOT_GRANTED
