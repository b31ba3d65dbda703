"""
Retrospective score adjustments.

A team's survey record names each member alongside a retro score and TA
feedback. Members with no contribution form on file have their retro
score capped at 0.8, unless the deliverable's bonus predicate holds for
the record.
"""

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Collection, Iterable

from src.scheduler.errors import ConfigurationError

from .policy import DeliverableGradingPolicy

logger = logging.getLogger(__name__)

MISSING_FORM_CAP = 0.8


@dataclass(frozen=True)
class RetroEntry:
    score: float
    feedback: str = ""
    missing_form: bool = False


def entries_from_record(
    record: dict,
    policy: DeliverableGradingPolicy,
    contributors: Collection[str],
) -> dict[str, RetroEntry]:
    """
    Map one survey record to retro entries keyed by lower-cased person id.

    Args:
        record: Survey row (column name -> value)
        policy: Supplies the column mapping and bonus predicate
        contributors: Lower-cased ids with a contribution form on file
    """
    force_bonus = (
        policy.force_retro_bonus is not None and policy.force_retro_bonus.matches(record)
    )
    entries = {}
    for columns in policy.retro_columns:
        person_id = (record.get(columns.id_column) or "").strip().lower()
        if not person_id:
            continue
        try:
            score = float(record.get(columns.score_column) or 0)
        except ValueError:
            logger.warning(
                f"Unparseable retro score for {person_id}: {record.get(columns.score_column)!r}"
            )
            score = 0.0
        feedback = (record.get(columns.feedback_column) or "").strip()

        missing_form = person_id not in contributors
        if missing_form and not force_bonus:
            score = min(score, MISSING_FORM_CAP)

        entries[person_id] = RetroEntry(score=score, feedback=feedback, missing_form=missing_form)
    return entries


def retro_comment(entry: RetroEntry) -> str:
    """Comment prefix describing a retro adjustment."""
    comment = f"Retrospective Score: {entry.score:g}"
    if entry.missing_form:
        comment += "; No Contribution Form Submitted"
    if entry.feedback:
        comment += f"; TA Feedback: {entry.feedback}"
    return comment


def entries_from_survey(
    records: Iterable[dict],
    policy: DeliverableGradingPolicy,
    contributors: Iterable[str],
) -> dict[str, RetroEntry]:
    """Map every team's survey record; a later record for a person wins."""
    contributor_ids = {c.strip().lower() for c in contributors if c.strip()}
    entries: dict[str, RetroEntry] = {}
    for record in records:
        entries.update(entries_from_record(record, policy, contributor_ids))
    logger.info(
        f"Mapped {len(entries)} retro entries for {policy.deliverable_id} "
        f"({len(contributor_ids)} contribution forms)"
    )
    return entries


def load_survey(path: str | Path) -> list[dict]:
    """Read a survey export (CSV with a header row)."""
    try:
        with open(path, newline="", encoding="utf-8-sig") as f:
            return list(csv.DictReader(f))
    except FileNotFoundError as e:
        raise ConfigurationError(f"Survey file not found: {path}") from e


def load_contributors(path: str | Path) -> list[str]:
    """Person ids with a contribution form on file, one per line."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigurationError(f"Contributor list not found: {path}") from e
    return [line.strip() for line in text.splitlines() if line.strip()]
