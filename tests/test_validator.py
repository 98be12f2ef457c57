"""Tests for the evaluation consistency rules (no store involved)."""

import pytest
from bson import ObjectId

from errors import (
    MissingCommonScoreError,
    MissingIndividualScoresError,
    MissingMixedScoreError,
    NotationMismatchError,
    ScoreOutOfRangeError,
    TargetNotInFormError,
    TypeMismatchError,
    UnknownLineError,
)
from schemas import Evaluation
from validator import collect_violations, line_index, target_in_form, validate_evaluation


def make_form(association_type="student", **targets):
    form = {
        "_id": ObjectId(),
        "association_type": association_type,
        "students": [],
        "groups": [],
        "subgroups": [],
        "promotion": None,
        "sections": [
            {
                "title": "Technique",
                "lines": [
                    {"id": "l-common", "title": "Code", "max_score": 8, "type": "scale", "notation_type": "common"},
                    {"id": "l-indiv", "title": "Oral", "max_score": 8, "type": "scale", "notation_type": "individual"},
                ],
            },
            {
                "title": "Livrable",
                "lines": [
                    {"id": "l-mixed", "title": "Demo", "max_score": 1, "type": "binary", "notation_type": "mixed"},
                ],
            },
        ],
    }
    if association_type == "promotion":
        form["promotion"] = targets.get("promotion", "p1")
    else:
        form[f"{association_type}s"] = targets.get("ids", ["s1"])
    return form


def make_evaluation(scores, evaluation_type="student", **target):
    target = target or {"student": "s1"}
    return Evaluation(form="f1", evaluation_type=evaluation_type, scores=scores, **target)


def common(value, line_id="l-common"):
    return {"line_id": line_id, "notation_type": "common", "common_score": value}


# -------------------- Score ranges -------------------- #

class TestScoreRange:
    def test_common_score_within_range(self):
        """A common score of 5 on a line out of 8 is accepted."""
        validate_evaluation(make_form(), make_evaluation([common(5)]))

    def test_bounds_are_inclusive(self):
        """0 and max_score are both valid scores."""
        validate_evaluation(make_form(), make_evaluation([common(0)]))
        validate_evaluation(make_form(), make_evaluation([common(8)]))

    def test_common_score_above_max(self):
        """A common score of 9 on a line out of 8 is rejected."""
        with pytest.raises(ScoreOutOfRangeError) as exc:
            validate_evaluation(make_form(), make_evaluation([common(9)]))
        assert exc.value.detail["line_id"] == "l-common"
        assert exc.value.detail["max_score"] == 8

    def test_negative_score(self):
        """Negative scores are out of range."""
        with pytest.raises(ScoreOutOfRangeError):
            validate_evaluation(make_form(), make_evaluation([common(-1)]))

    def test_individual_entry_out_of_range(self):
        """One bad individual score rejects the line and names the student."""
        score = {
            "line_id": "l-indiv",
            "notation_type": "individual",
            "individual_scores": [{"student_id": "a", "score": 4}, {"student_id": "b", "score": 12}],
        }
        with pytest.raises(ScoreOutOfRangeError) as exc:
            validate_evaluation(make_form(), make_evaluation([score]))
        assert exc.value.detail["student_id"] == "b"

    def test_mixed_binary_line_common_above_one(self):
        """A binary line accepts at most 1, even in mixed notation."""
        score = {"line_id": "l-mixed", "notation_type": "mixed", "common_score": 2}
        with pytest.raises(ScoreOutOfRangeError):
            validate_evaluation(make_form(), make_evaluation([score]))


# -------------------- Notation shape -------------------- #

class TestNotation:
    def test_notation_mismatch(self):
        """Scoring a common line with individual scores is rejected."""
        score = {"line_id": "l-common", "notation_type": "individual", "individual_scores": [{"student_id": "a", "score": 3}]}
        with pytest.raises(NotationMismatchError) as exc:
            validate_evaluation(make_form(), make_evaluation([score]))
        assert exc.value.detail["expected"] == "common"

    def test_missing_common_score(self):
        """A common line without common_score is rejected."""
        with pytest.raises(MissingCommonScoreError):
            validate_evaluation(make_form(), make_evaluation([common(None)]))

    def test_missing_individual_scores(self):
        """An individual line needs at least one student score."""
        score = {"line_id": "l-indiv", "notation_type": "individual", "individual_scores": []}
        with pytest.raises(MissingIndividualScoresError):
            validate_evaluation(make_form(), make_evaluation([score]))

    def test_mixed_needs_one_of_both(self):
        """A mixed line with neither common nor individual scores is rejected."""
        score = {"line_id": "l-mixed", "notation_type": "mixed"}
        with pytest.raises(MissingMixedScoreError):
            validate_evaluation(make_form(), make_evaluation([score]))

    def test_mixed_accepts_individual_only(self):
        """Individual scores alone satisfy a mixed line."""
        score = {"line_id": "l-mixed", "notation_type": "mixed", "individual_scores": [{"student_id": "a", "score": 1}]}
        validate_evaluation(make_form(), make_evaluation([score]))


# -------------------- Form agreement -------------------- #

class TestFormAgreement:
    def test_unknown_line(self):
        """A score for a line the form does not have is rejected."""
        with pytest.raises(UnknownLineError):
            validate_evaluation(make_form(), make_evaluation([common(5, line_id="missing")]))

    def test_type_mismatch(self):
        """A group evaluation on a student form is rejected."""
        evaluation = make_evaluation([common(5)], evaluation_type="group", group="g1")
        with pytest.raises(TypeMismatchError):
            validate_evaluation(make_form(), evaluation)

    def test_target_not_in_form(self):
        """The evaluated student must be one of the form's students."""
        evaluation = make_evaluation([common(5)], student="s2")
        with pytest.raises(TargetNotInFormError):
            validate_evaluation(make_form(), evaluation)

    def test_missing_target(self):
        """An evaluation that names no target is never in the form."""
        evaluation = make_evaluation([common(5)], subgroup="sg1")
        with pytest.raises(TargetNotInFormError):
            validate_evaluation(make_form(), evaluation)

    def test_promotion_target(self):
        """Promotion forms compare against their single promotion."""
        form = make_form("promotion", promotion="p1")
        validate_evaluation(form, make_evaluation([common(5)], evaluation_type="promotion", promotion="p1"))
        assert not target_in_form(form, "promotion", "p2")

    def test_type_checked_before_lines(self):
        """The first reported violation follows rule order."""
        evaluation = make_evaluation([common(5, line_id="missing")], evaluation_type="group", group="g1")
        with pytest.raises(TypeMismatchError):
            validate_evaluation(make_form(), evaluation)


# -------------------- Collecting -------------------- #

class TestCollectViolations:
    def test_reports_every_violation(self):
        """Each bad score is reported once, in position order."""
        scores = make_evaluation([common(9), common(1, line_id="nope"), common(None)]).scores
        violations = collect_violations(make_form(), "student", "s1", scores)
        assert [v.kind for v in violations] == ["ScoreOutOfRange", "UnknownLine", "MissingCommonScore"]
        assert [v.detail["position"] for v in violations] == [0, 1, 2]

    def test_skips_target_rules_without_type(self):
        """Score-only previews do not check type or target."""
        scores = make_evaluation([common(4)]).scores
        assert collect_violations(make_form(), None, None, scores) == []

    def test_line_index(self):
        """All lines of all sections are indexed by id."""
        assert sorted(line_index(make_form())) == ["l-common", "l-indiv", "l-mixed"]
