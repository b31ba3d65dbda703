"""
Tests for regression penalties over submission history.
"""

import pytest

from src.grading.regression import (
    RegressionStatus,
    compute_regression,
    is_valid_for_regression,
    penalty_from_deltas,
    regression_history,
)
from src.scheduler.entities import JobState
from src.scheduler.errors import ConfigurationError


@pytest.fixture
def submissions(make_result, make_report):
    """Results with the given acceptance pass counts, oldest first."""

    def _create(*passed_counts):
        return [make_result(report=make_report(acceptance_passed=n)) for n in passed_counts]

    return _create


class TestPenaltyFromDeltas:
    """Tests for penalty_from_deltas()."""

    def test_no_regressions(self):
        assert penalty_from_deltas([-0.2, 0.0], 26, 42) == (0.0, None)

    def test_single_regression_is_forgiven(self):
        assert penalty_from_deltas([0.3, -0.1], 26, 42) == (0.0, 0.3)

    def test_largest_regression_is_forgiven(self):
        penalty, forgiven = penalty_from_deltas([0.3, 0.1, -0.2], 26, 42)

        assert forgiven == 0.3
        assert penalty == round(100 * 0.1 * (26 / 42) / 2, 2) == 3.1

    def test_equal_regressions_forgive_only_one(self):
        penalty, forgiven = penalty_from_deltas([0.1, 0.1], 26, 42)

        assert forgiven == 0.1
        assert penalty == 3.1

    def test_zero_public_count_with_penalty_raises(self):
        with pytest.raises(ConfigurationError):
            penalty_from_deltas([0.3, 0.1], 26, 0)

    def test_zero_public_count_without_penalty_is_fine(self):
        assert penalty_from_deltas([0.3], 26, 0) == (0.0, 0.3)


class TestRegressionHistory:
    def test_only_primary_branch_counts(self, policy, make_result):
        feature = make_result(ref="refs/heads/feature")
        graded = make_result()

        assert regression_history(graded, [feature], policy) == [graded]

    def test_failed_and_zero_overall_results_are_skipped(self, policy, make_result, make_report):
        failed = make_result(state=JobState.FAILED)
        zero = make_result(report=make_report(public=0, overall=0))
        graded = make_result()

        assert not is_valid_for_regression(failed, policy)
        assert not is_valid_for_regression(zero, policy)
        assert regression_history(graded, [failed, zero], policy) == [graded]

    def test_late_results_are_skipped(self, policy, make_result):
        late = make_result(timestamp=policy.close_timestamp + 1)

        assert not is_valid_for_regression(late, policy)

    def test_later_submissions_are_excluded(self, policy, submissions):
        first, second, third = submissions(10, 20, 5)

        history = regression_history(second, [first, second, third], policy)

        assert history == [first, second]

    def test_graded_result_is_counted_once(self, policy, submissions):
        first, second = submissions(10, 20)

        history = regression_history(second, [first, second, second], policy)

        assert [r.result_id for r in history] == [first.result_id, second.result_id]

    def test_sorted_by_event_timestamp(self, policy, submissions):
        first, second, third = submissions(10, 20, 5)

        assert regression_history(third, [third, first, second], policy) == [first, second, third]


class TestComputeRegression:
    def test_first_submission_has_no_penalty(self, policy, submissions):
        (only,) = submissions(10)

        outcome = compute_regression(only, [], policy)

        assert outcome.status == RegressionStatus.NONE
        assert outcome.penalty == 0.0
        assert outcome.history == (only,)

    def test_steady_improvement_has_no_penalty(self, policy, submissions):
        results = submissions(5, 10, 20)

        outcome = compute_regression(results[-1], results, policy)

        assert outcome.status == RegressionStatus.NONE
        assert outcome.penalty == 0.0

    def test_single_drop_is_forgiven(self, policy, submissions):
        results = submissions(20, 10, 15)

        outcome = compute_regression(results[-1], results, policy)

        assert outcome.status == RegressionStatus.FORGIVEN
        assert outcome.penalty == 0.0
        assert outcome.forgiven_delta == pytest.approx(10 / 26)

    def test_second_drop_is_penalized(self, policy, submissions):
        # Drops of 10/26 (forgiven) and 5/26
        results = submissions(20, 10, 20, 15)

        outcome = compute_regression(results[-1], results, policy)

        assert outcome.status == RegressionStatus.APPLIED
        assert outcome.penalty == round(100 * (5 / 26) * (26 / 42) / 2, 2) == 5.95
        assert len(outcome.deltas) == 4
