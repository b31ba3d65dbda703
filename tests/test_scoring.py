"""
Tests for report validation and score extraction.
"""

import pytest

from src.grading.scoring import (
    acceptance_score,
    divergence_warning,
    extract_private_score,
    validate_report,
    weighted_score,
)
from src.scheduler.entities import JobState
from src.scheduler.errors import ConfigurationError, MalformedReportError


class TestValidateReport:
    """Tests for validate_report()."""

    def test_accepts_well_formed_report(self, make_report):
        report = make_report()
        assert validate_report(report) is report

    @pytest.mark.parametrize("report", [None, [], "report"])
    def test_rejects_non_objects(self, report):
        with pytest.raises(MalformedReportError):
            validate_report(report)

    def test_rejects_missing_score_fields(self, make_report):
        report = make_report()
        del report["scoreOverall"]

        with pytest.raises(MalformedReportError) as exc_info:
            validate_report(report)

        assert "scoreOverall" in str(exc_info.value)

    def test_rejects_missing_custom(self, make_report):
        report = make_report()
        del report["custom"]

        with pytest.raises(MalformedReportError):
            validate_report(report)

    def test_rejects_non_numeric_score(self, make_report):
        report = make_report()
        report["scoreTest"] = "eighty"

        with pytest.raises(MalformedReportError):
            validate_report(report)


class TestPrivateScore:
    def test_reads_private_score(self, make_report):
        assert extract_private_score(make_report(private=55)) == (55.0, None)

    def test_missing_private_section_defaults_to_zero(self, make_report):
        score, warning = extract_private_score(make_report(private=None))

        assert score == 0.0
        assert "No private test results" in warning

    def test_incomplete_private_section_defaults_to_zero(self, make_report):
        report = make_report()
        report["custom"]["private"] = {}

        score, warning = extract_private_score(report)

        assert score == 0.0
        assert "incomplete" in warning


class TestWeightedScore:
    def test_weights_by_test_counts(self, policy):
        # 80 * 42/62 + 60 * 20/62
        assert weighted_score(80, 60, policy) == 73.55

    def test_zero_test_counts_is_configuration_error(self, make_policy):
        policy = make_policy(public_test_count=0, private_test_count=0)

        with pytest.raises(ConfigurationError):
            weighted_score(80, 60, policy)

    def test_public_only(self, make_policy):
        assert weighted_score(80, 0, make_policy(private_test_count=0)) == 80.0


class TestDivergence:
    def test_gap_of_twenty_is_not_flagged(self):
        assert divergence_warning(80, 60) is None

    def test_larger_gap_is_flagged(self):
        warning = divergence_warning(90, 60)

        assert warning is not None
        assert "public 90" in warning
        assert "private 60" in warning

    def test_private_higher_is_not_flagged(self):
        assert divergence_warning(40, 90) is None


class TestAcceptanceScore:
    def test_missing_result_scores_zero(self):
        assert acceptance_score(None, 26) == 0.0

    def test_fraction_of_suite_passed(self, make_result, make_report):
        result = make_result(report=make_report(acceptance_passed=13))

        assert acceptance_score(result, 26) == 0.5

    def test_result_without_report_scores_zero(self, make_result):
        result = make_result(state=JobState.ERRORED)

        assert acceptance_score(result, 26) == 0.0

    def test_zero_acceptance_count_is_configuration_error(self, make_result):
        with pytest.raises(ConfigurationError):
            acceptance_score(make_result(), 0)
