"""
Grade Computer.

Turns a successful AutoTestResult into a Grade:
1. Score the report according to the deliverable's strategy
2. For PUBLIC_PRIVATE: weight public/private scores and subtract the
   regression penalty computed over the repo's submission history
3. Assemble the student-facing comment and the custom breakdown

compute_grade() is pure. grade_result() and release_deliverable() add the
persistence side (save + audit), gated by an explicit commit flag.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from src.scheduler.entities import AutoTestResult, Grade, now_ms
from src.scheduler.errors import InvalidOperationError, MalformedReportError
from src.scheduler.persistence import DataStore

from .policy import DeliverableGradingPolicy, ScoringStrategy
from .portal import ClassPortal
from .regression import RegressionStatus, compute_regression
from .retro import RetroEntry, retro_comment
from .scoring import (
    divergence_warning,
    extract_private_score,
    validate_report,
    weighted_score,
)

logger = logging.getLogger(__name__)

AUDIT_GRADE_CHANGE = "grade_change"
RELEASE_URL_NAME = "Transformed"

COMMENT_PENALTY = "A regression penalty of {penalty}% was applied to this grade."
COMMENT_NO_REGRESSION = "No regressions were applied to this grade."
COMMENT_FORGIVEN = "One regression was forgiven; no regression penalty was applied to this grade."


@dataclass
class ReleaseSummary:
    """Outcome of a batch release for one deliverable."""

    deliverable_id: str
    dry_run: bool
    deltas: dict[str, float] = field(default_factory=dict)
    committed: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def increased(self) -> int:
        return sum(1 for d in self.deltas.values() if d > 0)

    @property
    def decreased(self) -> int:
        return sum(1 for d in self.deltas.values() if d < 0)

    @property
    def unchanged(self) -> int:
        return sum(1 for d in self.deltas.values() if d == 0)

    @property
    def average_change(self) -> float:
        if not self.deltas:
            return 0.0
        return round(sum(self.deltas.values()) / len(self.deltas), 2)

    def to_dict(self) -> dict:
        return {
            "deliverable_id": self.deliverable_id,
            "dry_run": self.dry_run,
            "increased": self.increased,
            "decreased": self.decreased,
            "unchanged": self.unchanged,
            "average_change": self.average_change,
            "committed": list(self.committed),
            "failures": dict(self.failures),
        }


class GradeComputer:
    """
    Computes and records grades.

    Grades are append-only: a recomputation saves a new Grade and writes a
    grade_change audit entry holding the previous one.
    """

    def __init__(
        self,
        store: DataStore,
        portal: ClassPortal,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.portal = portal
        self._clock = clock

    # =========================================================================
    # Pure computation
    # =========================================================================

    def compute_grade(
        self,
        result: AutoTestResult,
        prior_results: Iterable[AutoTestResult],
        policy: DeliverableGradingPolicy,
        retro: Optional[RetroEntry] = None,
        url_name: Optional[str] = None,
    ) -> Grade:
        """
        Compute a Grade for one successful result.

        Raises:
            MalformedReportError: If the result is not gradable
            ConfigurationError: If the policy cannot weight the scores
        """
        if not result.is_gradable:
            raise MalformedReportError(
                f"Result {result.result_id} is {result.state.value}; only successful runs are graded"
            )
        report = validate_report(result.report)

        comment_parts: list[str] = []
        custom: dict = {}
        if retro is not None:
            comment_parts.append(retro_comment(retro))
            custom["retroScore"] = retro.score

        overall = float(report["scoreOverall"])
        score_public = float(report["scoreTest"])
        cover = report.get("scoreCover")

        if policy.strategy == ScoringStrategy.OVERALL:
            score = round(overall, 2)
            custom["scores"] = {"public": score_public, "overall": overall, "cover": cover}
        else:
            score_private, private_warning = extract_private_score(report)
            weighted = weighted_score(score_public, score_private, policy)

            divergence = divergence_warning(score_public, score_private)
            if divergence:
                logger.warning(
                    f"Divergent score for {result.target.requested_by}; "
                    f"overall: {overall}; weighted: {weighted}"
                )
            warnings = [w for w in (private_warning, divergence) if w]
            comment_parts.extend(warnings)

            regression = compute_regression(result, prior_results, policy)
            score = round(weighted - regression.penalty, 2)

            if regression.status == RegressionStatus.APPLIED:
                comment_parts.append(COMMENT_PENALTY.format(penalty=regression.penalty))
            elif regression.status == RegressionStatus.FORGIVEN:
                comment_parts.append(COMMENT_FORGIVEN)
            else:
                comment_parts.append(COMMENT_NO_REGRESSION)

            custom["regression"] = {
                "preRegression": weighted,
                "penalty": regression.penalty,
                "postRegression": score,
            }
            custom["scores"] = {
                "public": score_public,
                "private": score_private,
                "weighted": weighted,
                "overall": overall,
                "cover": cover,
            }
            custom["warnings"] = warnings
            custom["regressionHistory"] = [r.target.commit_sha for r in regression.history]

        return Grade(
            person_id=result.target.requested_by,
            deliverable_id=policy.deliverable_id,
            score=score,
            comment="; ".join(comment_parts),
            timestamp=self._clock(),
            custom=custom,
            repo_id=result.target.repo_id,
            result_id=result.result_id,
            url_name=url_name or result.target.commit_sha[:7],
        )

    # =========================================================================
    # Persistence
    # =========================================================================

    def _record(self, previous: Optional[Grade], grade: Grade, policy: DeliverableGradingPolicy) -> None:
        self.store.save_grade(grade)
        self.store.write_audit(
            AUDIT_GRADE_CHANGE,
            policy.audit_id,
            previous.to_dict() if previous else None,
            grade.to_dict(),
            {"result_id": grade.result_id},
        )

    def grade_result(self, result: AutoTestResult, *, commit: bool = True) -> Optional[Grade]:
        """
        Grade a freshly recorded result against the repo's history.

        Results received after the deliverable closed are not graded.

        Args:
            result: A SUCCEEDED result
            commit: Persist the grade and audit entry when True

        Returns:
            The computed Grade, or None for a late submission

        Raises:
            MalformedReportError: If the result is not gradable
            ConfigurationError: If the deliverable is unknown or misconfigured
        """
        policy = self.portal.get_policy(result.target.deliverable_id)
        policy.validate()

        if result.target.timestamp > policy.close_timestamp:
            logger.info(
                f"Result {result.result_id} for {result.target.requested_by} arrived after "
                f"{policy.deliverable_id} closed; not graded"
            )
            return None

        prior_results = self.store.get_results_for_repo(
            policy.deliverable_id, result.target.repo_id
        )
        grade = self.compute_grade(result, prior_results, policy)

        if commit:
            previous = self.store.get_grade(grade.person_id, grade.deliverable_id)
            self._record(previous, grade, policy)
            logger.info(
                f"Grade saved for {grade.person_id} on {grade.deliverable_id}: {grade.score}"
            )
        else:
            logger.info(
                f"Dry run grade for {grade.person_id} on {grade.deliverable_id}: {grade.score}"
            )
        return grade

    def release_deliverable(
        self,
        deliverable_id: str,
        *,
        retro_entries: Optional[dict[str, RetroEntry]] = None,
        commit: bool = False,
        test_user: Optional[str] = None,
    ) -> ReleaseSummary:
        """
        Recompute every current grade of a deliverable from its basis result.

        Per-student failures are logged and counted; they never stop the
        batch. A configuration error halts the whole release.

        Args:
            deliverable_id: Deliverable to release
            retro_entries: Retro adjustments keyed by lower-cased person id;
                when given, every student gets a retro prefix (0 if missing)
            commit: Persist new grades; False is a dry run
            test_user: Person whose grade is always persisted, even in a dry run
        """
        policy = self.portal.get_policy(deliverable_id)
        policy.validate()

        summary = ReleaseSummary(deliverable_id=deliverable_id, dry_run=not commit)
        grades = self.store.get_all_grades(deliverable_id)
        logger.info(f"Releasing {deliverable_id}: {len(grades)} grades (commit={commit})")

        for grade in grades:
            person = grade.person_id
            try:
                result = self.store.get_result(grade.result_id) if grade.result_id else None
                if result is None:
                    raise InvalidOperationError(f"no basis result for grade of {person}")

                retro = None
                if retro_entries is not None:
                    retro = retro_entries.get(person.lower())
                    if retro is None:
                        logger.warning(f"Retro missing for {person}")
                        retro = RetroEntry(score=0.0)

                prior_results = self.store.get_results_for_repo(deliverable_id, result.target.repo_id)
                new_grade = self.compute_grade(
                    result, prior_results, policy, retro=retro, url_name=RELEASE_URL_NAME
                )
                new_grade = dataclasses.replace(new_grade, person_id=person)
            except (MalformedReportError, InvalidOperationError) as e:
                logger.error(f"Release of {deliverable_id} failed for {person}: {e}")
                summary.failures[person] = str(e)
                continue

            summary.deltas[person] = round(new_grade.score - grade.score, 2)

            if commit or person == test_user:
                self._record(grade, new_grade, policy)
                summary.committed.append(person)
                logger.info(f"Grade update for: {person}")
            else:
                logger.info(f"Dry run grade update for: {person}")

        logger.info(
            f"Release summary for {deliverable_id}: "
            f"{summary.increased} increased, {summary.decreased} decreased, "
            f"{summary.unchanged} unchanged, average change {summary.average_change}, "
            f"{len(summary.failures)} failed"
        )
        return summary
