"""
Tests for retrospective score adjustments.
"""

import pytest

from src.grading.policy import ColumnEquals, RetroColumns
from src.grading.retro import (
    MISSING_FORM_CAP,
    RetroEntry,
    entries_from_record,
    entries_from_survey,
    load_contributors,
    load_survey,
    retro_comment,
)
from src.scheduler.errors import ConfigurationError


@pytest.fixture
def retro_policy(make_policy):
    return make_policy(
        retro_columns=(
            RetroColumns("member1", "member1_score", "member1_feedback"),
            RetroColumns("member2", "member2_score", "member2_feedback"),
        ),
        force_retro_bonus=ColumnEquals("form", "exempt"),
    )


def survey_record(**overrides) -> dict:
    record = {
        "member1": " Alice ",
        "member1_score": "0.95",
        "member1_feedback": "Great teamwork ",
        "member2": "bob",
        "member2_score": "1",
        "member2_feedback": "",
        "form": "",
    }
    record.update(overrides)
    return record


class TestEntriesFromRecord:
    """Tests for entries_from_record()."""

    def test_maps_each_member(self, retro_policy):
        entries = entries_from_record(survey_record(), retro_policy, {"alice", "bob"})

        assert entries == {
            "alice": RetroEntry(score=0.95, feedback="Great teamwork"),
            "bob": RetroEntry(score=1.0),
        }

    def test_missing_form_caps_score(self, retro_policy):
        entries = entries_from_record(survey_record(), retro_policy, {"alice"})

        assert entries["bob"].score == MISSING_FORM_CAP
        assert entries["bob"].missing_form is True
        assert entries["alice"].score == 0.95

    def test_cap_never_raises_a_score(self, retro_policy):
        record = survey_record(member2_score="0.5")

        entries = entries_from_record(record, retro_policy, set())

        assert entries["bob"].score == 0.5

    def test_bonus_predicate_skips_cap(self, retro_policy):
        record = survey_record(form="exempt")

        entries = entries_from_record(record, retro_policy, set())

        assert entries["bob"].score == 1.0
        assert entries["bob"].missing_form is True

    def test_blank_member_is_skipped(self, retro_policy):
        record = survey_record(member2="  ")

        assert list(entries_from_record(record, retro_policy, {"alice"})) == ["alice"]

    def test_unparseable_score_is_zero(self, retro_policy):
        record = survey_record(member1_score="n/a")

        entries = entries_from_record(record, retro_policy, {"alice", "bob"})

        assert entries["alice"].score == 0.0


class TestEntriesFromSurvey:
    def test_merges_team_records(self, retro_policy):
        records = [
            survey_record(),
            survey_record(member1="carol", member2="dave", member2_score="0.9"),
        ]

        entries = entries_from_survey(records, retro_policy, [" Alice", "BOB", "carol", ""])

        assert sorted(entries) == ["alice", "bob", "carol", "dave"]
        assert entries["dave"].score == MISSING_FORM_CAP
        assert entries["carol"].missing_form is False


class TestSurveyFiles:
    def test_load_survey(self, tmp_path):
        path = tmp_path / "retro.csv"
        path.write_text(
            "member1,member1_score,member1_feedback\nalice,0.9,Nice\n", encoding="utf-8"
        )

        assert load_survey(path) == [
            {"member1": "alice", "member1_score": "0.9", "member1_feedback": "Nice"}
        ]

    def test_load_contributors_skips_blank_lines(self, tmp_path):
        path = tmp_path / "forms.txt"
        path.write_text("alice\n\n  bob \n", encoding="utf-8")

        assert load_contributors(path) == ["alice", "bob"]

    def test_missing_files(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_survey(tmp_path / "nope.csv")
        with pytest.raises(ConfigurationError):
            load_contributors(tmp_path / "nope.txt")


class TestRetroComment:
    def test_score_only(self):
        assert retro_comment(RetroEntry(score=1.0)) == "Retrospective Score: 1"

    def test_full_comment(self):
        entry = RetroEntry(score=0.8, feedback="Attend standups", missing_form=True)

        assert retro_comment(entry) == (
            "Retrospective Score: 0.8; No Contribution Form Submitted; "
            "TA Feedback: Attend standups"
        )
