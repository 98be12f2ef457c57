"""
Evaluation consistency rules.

Checks an evaluation candidate against the stored form it claims to use:
evaluation type, target membership, line coverage, notation agreement and
score shape/range. The functions here are pure; loading the form (and
failing with NotFoundError when it does not exist) is the caller's job.

`iter_violations` yields every violation in rule order so a preview can
report all of them; `validate_evaluation` stops at the first one, which is
what every write uses.
"""

from typing import Any, Dict, Iterator, List, Optional

from errors import (
    MissingCommonScoreError,
    MissingIndividualScoresError,
    MissingMixedScoreError,
    NotationMismatchError,
    ScoreOutOfRangeError,
    ServiceError,
    TargetNotInFormError,
    TypeMismatchError,
    UnknownLineError,
)
from schemas import (
    ASSOCIATION_FIELDS,
    CommonLineScore,
    Evaluation,
    IndividualLineScore,
    Score,
    StudentScore,
)


def line_index(form: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    return {
        line["id"]: line
        for section in form.get("sections", [])
        for line in section.get("lines", [])
    }


def target_in_form(form: Dict[str, Any], evaluation_type: str, target_id: Optional[str]) -> bool:
    if not target_id:
        return False
    if evaluation_type == "promotion":
        return form.get("promotion") == target_id
    return target_id in (form.get(ASSOCIATION_FIELDS[evaluation_type]) or [])


def _range_violation(value: float, line: Dict[str, Any], detail: Dict[str, Any]) -> Optional[ServiceError]:
    max_score = line["max_score"]
    if 0 <= value <= max_score:
        return None
    return ScoreOutOfRangeError(
        f"score {value:g} for line {line['id']} must be between 0 and {max_score:g}",
        {**detail, "score": value, "max_score": max_score},
    )


def _individual_violations(entries: List[StudentScore], line: Dict[str, Any], detail: Dict[str, Any]) -> Iterator[ServiceError]:
    for entry in entries:
        violation = _range_violation(entry.score, line, {**detail, "student_id": entry.student_id})
        if violation:
            yield violation


def score_violations(score: Score, line: Dict[str, Any], position: int = 0) -> Iterator[ServiceError]:
    detail = {"line_id": score.line_id, "position": position}
    if score.notation_type != line["notation_type"]:
        yield NotationMismatchError(
            f"line {score.line_id} is scored as {line['notation_type']}, not {score.notation_type}",
            {**detail, "expected": line["notation_type"], "received": score.notation_type},
        )
        return

    if isinstance(score, CommonLineScore):
        if score.common_score is None:
            yield MissingCommonScoreError(f"line {score.line_id} needs a common_score", detail)
        else:
            violation = _range_violation(score.common_score, line, detail)
            if violation:
                yield violation
    elif isinstance(score, IndividualLineScore):
        if not score.individual_scores:
            yield MissingIndividualScoresError(f"line {score.line_id} needs individual_scores", detail)
        else:
            yield from _individual_violations(score.individual_scores, line, detail)
    else:
        if score.common_score is None and not score.individual_scores:
            yield MissingMixedScoreError(
                f"line {score.line_id} needs a common_score, individual_scores or both", detail
            )
            return
        if score.common_score is not None:
            violation = _range_violation(score.common_score, line, detail)
            if violation:
                yield violation
        yield from _individual_violations(score.individual_scores, line, detail)


def iter_violations(form: Dict[str, Any], evaluation_type: Optional[str], target_id: Optional[str], scores: List[Score]) -> Iterator[ServiceError]:
    """Yield every rule violated by the candidate, in rule order.

    When `evaluation_type` is None the type and target rules are skipped,
    which is how score-only previews are checked.
    """
    if evaluation_type is not None:
        if evaluation_type != form["association_type"]:
            yield TypeMismatchError(
                f"evaluation type {evaluation_type} does not match the form's {form['association_type']}",
                {"evaluation_type": evaluation_type, "association_type": form["association_type"]},
            )
        elif not target_in_form(form, evaluation_type, target_id):
            yield TargetNotInFormError(
                f"{evaluation_type} {target_id} is not a target of this form",
                {"evaluation_type": evaluation_type, "target": target_id},
            )

    lines = line_index(form)
    for position, score in enumerate(scores):
        line = lines.get(score.line_id)
        if line is None:
            yield UnknownLineError(
                f"line {score.line_id} does not exist in this form",
                {"line_id": score.line_id, "position": position},
            )
            continue
        yield from score_violations(score, line, position)


def collect_violations(form: Dict[str, Any], evaluation_type: Optional[str], target_id: Optional[str], scores: List[Score]) -> List[ServiceError]:
    return list(iter_violations(form, evaluation_type, target_id, scores))


def validate_evaluation(form: Dict[str, Any], evaluation: Evaluation) -> None:
    """Raise the first violated rule; return silently when the evaluation is consistent."""
    for violation in iter_violations(form, evaluation.evaluation_type, evaluation.target_id, evaluation.scores):
        raise violation
