from datetime import date, datetime, timedelta

import pytest

from taxlookup.periods import (
    ABATEMENT_APPLICATION_DEADLINE,
    ABATEMENT_GRACE_PERIOD_DEADLINE,
    EXEMPTION_APPLICATION_DEADLINE,
    EXEMPTIONS_IN_PROGRESS,
    NEW_APPLICATION_PERIOD_BEGINS,
    NEW_FY_PRELIMINARY_TAX_PERIOD_BEGINS,
    AbatementPhase,
    ExemptionPhase,
    ExemptionStatus,
    ExemptionType,
    abatement_reference_year,
    all_timepoints,
    classify_abatement,
    classify_exemption,
    current_period,
    exemption_status,
    fiscal_year,
    fiscal_year_and_quarter,
    format_date_for_display,
    is_preliminary_period,
    next_monday,
    quarter,
)


class TestNextMonday:
    def test_saturday_moves_two_days(self):
        assert next_monday(datetime(2025, 2, 1)) == datetime(2025, 2, 3)

    def test_sunday_moves_one_day(self):
        assert next_monday(datetime(2026, 2, 1)) == datetime(2026, 2, 2)

    def test_weekday_unchanged(self):
        assert next_monday(datetime(2024, 2, 1)) == datetime(2024, 2, 1)

    @pytest.mark.parametrize("year", range(2020, 2036))
    def test_deadlines_land_on_weekdays(self, year):
        for anchor in (ABATEMENT_APPLICATION_DEADLINE, EXEMPTION_APPLICATION_DEADLINE):
            resolved = anchor.resolve(year)
            assert resolved.weekday() < 5
            assert timedelta(0) <= resolved - resolved.replace(day=1) <= timedelta(days=2)


class TestAnchors:
    @pytest.mark.parametrize("year", range(2020, 2036))
    def test_anchor_ordering(self, year):
        jan1 = NEW_APPLICATION_PERIOD_BEGINS.resolve(year)
        abatement = ABATEMENT_APPLICATION_DEADLINE.resolve(year)
        grace = ABATEMENT_GRACE_PERIOD_DEADLINE.resolve(year)
        exemptions = EXEMPTIONS_IN_PROGRESS.resolve(year)
        exemption_deadline = EXEMPTION_APPLICATION_DEADLINE.resolve(year)
        july1 = NEW_FY_PRELIMINARY_TAX_PERIOD_BEGINS.resolve(year)

        assert jan1 < abatement <= grace
        assert grace - abatement == timedelta(days=28)
        assert exemptions < exemption_deadline < july1

    def test_all_timepoints_sorted(self):
        timepoints = all_timepoints(2026)
        assert len(timepoints) == 6
        assert [t.date for t in timepoints] == sorted(t.date for t in timepoints)
        assert timepoints[0].label == "New application period begins"
        assert timepoints[-1].date == datetime(2026, 7, 1)

    def test_current_period_brackets_now(self):
        timepoints = all_timepoints(2026)
        period_from, period_to = current_period(datetime(2026, 3, 15), timepoints)
        assert period_from.label == "Abatement grace period deadline"
        assert period_to.label == "Exemption application deadline"

    def test_current_period_after_last(self):
        timepoints = all_timepoints(2026)
        period_from, period_to = current_period(date(2026, 9, 1), timepoints)
        assert period_from.date == datetime(2026, 7, 1)
        assert period_to is None


class TestFormatDate:
    def test_date_only(self):
        assert format_date_for_display(datetime(2025, 2, 3)) == "Monday, February 3, 2025"

    def test_with_time(self):
        assert (
            format_date_for_display(datetime(2025, 2, 3), with_time=True)
            == "Monday, February 3, 2025 at 12:00:00 AM"
        )
        assert (
            format_date_for_display(datetime(2025, 2, 3, 17, 5, 9), with_time=True)
            == "Monday, February 3, 2025 at 5:05:09 PM"
        )


class TestFiscalPeriod:
    def test_round_trip_every_day_of_2026(self):
        day = date(2026, 1, 1)
        while day.year == 2026:
            fy = fiscal_year(day)
            if day.month >= 7:
                assert fy == 2027
                assert quarter(day) == "1"
                assert is_preliminary_period(day)
            else:
                assert fy == 2026
                assert quarter(day) == "3"
                assert not is_preliminary_period(day)
            day += timedelta(days=1)

    def test_boundaries(self):
        assert fiscal_year_and_quarter(datetime(2026, 6, 30, 23, 59)) == (2026, "3")
        assert fiscal_year_and_quarter(datetime(2026, 7, 1)) == (2027, "1")

    def test_abatement_reference_year(self):
        assert abatement_reference_year(date(2026, 3, 15)) == 2025
        assert abatement_reference_year(date(2026, 7, 1)) == 2026


class TestClassifyExemption:
    def test_open_on_march_15_2026(self):
        result = classify_exemption(datetime(2026, 3, 15), 2026, ExemptionType.PERSONAL)

        assert result.phase == ExemptionPhase.OPEN
        assert result.deadline == datetime(2026, 4, 1)
        assert result.message_params == {
            "exemption_type": "Personal",
            "next_year": 2027,
            "deadline_date": "Wednesday, April 1, 2026 at 12:00:00 AM",
            "current_year": 2026,
        }

    def test_deadline_instant_is_open(self):
        deadline = EXEMPTION_APPLICATION_DEADLINE.resolve(2026)
        assert classify_exemption(deadline, 2026, "Residential").phase == ExemptionPhase.OPEN
        after = classify_exemption(deadline + timedelta(microseconds=1), 2026, "Residential")
        assert after.phase == ExemptionPhase.AFTER_DEADLINE

    def test_before_jan1(self):
        result = classify_exemption(datetime(2025, 12, 31), 2026, ExemptionType.RESIDENTIAL)
        assert result.phase == ExemptionPhase.BEFORE_JAN1
        assert result.message_params["jan1_date"] == "Thursday, January 1, 2026"

    def test_preliminary(self):
        result = classify_exemption(datetime(2026, 8, 1), 2026, ExemptionType.RESIDENTIAL)
        assert result.phase == ExemptionPhase.PRELIMINARY
        assert result.is_preliminary
        assert result.message_params["current_fy"] == 2027
        assert result.message_params["exemption_type_lower"] == "residential"
        assert result.message_params["next_jan1_date"] == "Friday, January 1, 2027"

    def test_following_year_falls_back(self):
        result = classify_exemption(datetime(2027, 1, 5), 2026, ExemptionType.RESIDENTIAL)
        assert result.phase == ExemptionPhase.BEFORE_JAN1
        assert result.message_params == {}

    def test_phases_follow_calendar_order(self):
        order = [
            ExemptionPhase.BEFORE_JAN1,
            ExemptionPhase.OPEN,
            ExemptionPhase.AFTER_DEADLINE,
            ExemptionPhase.PRELIMINARY,
        ]
        seen = []
        day = datetime(2025, 7, 1)
        while day < datetime(2027, 1, 1):
            phase = classify_exemption(day, 2026, ExemptionType.PERSONAL).phase
            if not seen or seen[-1] != phase:
                seen.append(phase)
            day += timedelta(hours=12)
        assert seen == order

    def test_invalid_type_rejected(self):
        with pytest.raises(ValueError):
            classify_exemption(datetime(2026, 3, 15), 2026, "Commercial")


class TestClassifyAbatement:
    def test_open_in_january(self):
        result = classify_abatement(datetime(2026, 1, 15), 2025, parcel_id="0504203000")
        assert result.phase == AbatementPhase.OPEN
        assert result.deadline == datetime(2026, 2, 2)
        assert result.message_params["parcel_id"] == "0504203000"
        assert result.message_params["current_year"] == 2025
        assert result.message_params["next_year"] == 2026
        assert result.message_params["deadline_date"] == "Monday, February 2, 2026 at 12:00:00 AM"

    def test_deadline_instant_is_open(self):
        assert classify_abatement(datetime(2026, 2, 2), 2025).phase == AbatementPhase.OPEN

    def test_after_deadline(self):
        result = classify_abatement(datetime(2026, 2, 3), 2025)
        assert result.phase == AbatementPhase.AFTER_DEADLINE
        assert result.message_params["deadline_date"] == "Monday, February 2, 2026"

    def test_preliminary(self):
        result = classify_abatement(datetime(2026, 7, 1), 2026)
        assert result.phase == AbatementPhase.PRELIMINARY
        assert result.message_params == {
            "current_fy": 2027,
            "current_year": 2027,
            "next_fy": 2028,
            "next_jan1_date": "Friday, January 1, 2027",
        }

    def test_branch_follows_calendar_year_of_now(self):
        result = classify_abatement(datetime(2026, 1, 10), 2020)
        assert result.phase == AbatementPhase.OPEN
        assert result.message_params["current_year"] == 2020
        assert result.message_params["next_year"] == 2021

    def test_accepts_plain_date(self):
        assert classify_abatement(date(2026, 1, 15), 2025).phase == AbatementPhase.OPEN


class TestExemptionStatus:
    def test_positive_amount_is_granted(self):
        assert exemption_status(2765.5, False, date(2026, 3, 1)) == ExemptionStatus.GRANTED

    def test_approved_during_preliminary(self):
        assert exemption_status(0, True, date(2026, 8, 1)) == ExemptionStatus.AMOUNT_TO_BE_DECIDED

    def test_not_submitted_during_preliminary(self):
        assert exemption_status(None, False, date(2026, 8, 1)) == ExemptionStatus.NOT_SUBMITTED

    def test_not_granted_outside_preliminary(self):
        assert exemption_status(0, True, date(2026, 3, 1)) == ExemptionStatus.NOT_GRANTED
