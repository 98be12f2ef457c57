"""
Evaluation records: validated writes, filtered listing, per-line
statistics, CSV export and the scoring context of a form.
"""

import calendar
import csv
import io
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from database import Store, collection_name, to_object_id
from directory import GROUP, PROMOTION, STUDENT, SUBGROUP, find_members_of
from errors import FormNotActiveError, ServiceError
from forms import FORM, TARGET_KINDS, form_filter, form_status, form_target_students, form_targets, iter_lines
from schemas import BulkEvaluationRequest, Evaluation, EvaluationUpdate, ScoreCheck
from validator import collect_violations, validate_evaluation

logger = logging.getLogger(__name__)

EVALUATION = collection_name(Evaluation)
ENFORCE_FORM_WINDOW = os.getenv("ENFORCE_FORM_WINDOW", "false").lower() in ("1", "true", "yes")

TARGET_FIELDS = ("student", "group", "subgroup", "promotion")


def _require_form(store: Store, form_id: str) -> Dict[str, Any]:
    return store.require_document(FORM, form_id)


def _check_form_open(form: Dict[str, Any], enforce_window: bool) -> None:
    if not enforce_window:
        return
    status = form_status(form)
    if status != "active":
        raise FormNotActiveError(
            f"form {form['_id']} is {status} and does not accept evaluations",
            {"form": str(form["_id"]), "status": status},
        )


def _validate(form: Dict[str, Any], candidate: Evaluation, enforce_window: bool) -> None:
    try:
        _check_form_open(form, enforce_window)
        validate_evaluation(form, candidate)
    except ServiceError as exc:
        logger.info("Rejected evaluation on form %s: %s %s", form["_id"], exc.kind, exc.detail)
        raise


def _with_context(store: Store, candidate: Evaluation) -> Dict[str, Any]:
    """Fill the denormalized promotion/group and the covered students from the directory."""
    doc = candidate.model_dump()
    kind = TARGET_KINDS[candidate.evaluation_type]
    target = store.get_document(kind, candidate.target_id)
    if target is None:
        return doc
    if kind == GROUP:
        doc["promotion"] = doc["promotion"] or target.get("promotion")
    elif kind == SUBGROUP:
        doc["group"] = doc["group"] or target.get("group")
        doc["promotion"] = doc["promotion"] or target.get("promotion")
    elif kind == STUDENT:
        doc["group"] = doc["group"] or target.get("current_group")
        doc["promotion"] = doc["promotion"] or target.get("current_promotion")
    if not doc["target_students"]:
        doc["target_students"] = [str(s["_id"]) for s in find_members_of(store, kind, candidate.target_id)]
    return doc


def _insert(store: Store, form: Dict[str, Any], candidate: Evaluation, enforce_window: bool) -> Dict[str, Any]:
    _validate(form, candidate, enforce_window)
    doc = _with_context(store, candidate)
    doc["form"] = str(form["_id"])
    eid = store.create_document(EVALUATION, doc)
    logger.info("Created %s evaluation %s on form %s", candidate.evaluation_type, eid, doc["form"])
    return store.get_document(EVALUATION, eid)


# -------------------- CRUD -------------------- #

def create_evaluation(store: Store, payload: Evaluation, enforce_window: bool = ENFORCE_FORM_WINDOW) -> Dict[str, Any]:
    form = _require_form(store, payload.form)
    return _insert(store, form, payload, enforce_window)


def get_evaluation(store: Store, evaluation_id: str) -> Dict[str, Any]:
    return store.require_document(EVALUATION, evaluation_id)


def update_evaluation(store: Store, evaluation_id: str, patch: EvaluationUpdate, enforce_window: bool = ENFORCE_FORM_WINDOW) -> Dict[str, Any]:
    current = store.require_document(EVALUATION, evaluation_id)
    fields = patch.model_dump(exclude_unset=True)
    if fields.get("scores") is None:
        fields.pop("scores", None)
    if fields.get("target_students") is None:
        fields.pop("target_students", None)

    if "scores" in fields or any(k in fields for k in TARGET_FIELDS):
        merged = {**current, **fields}
        candidate = Evaluation.model_validate({name: merged.get(name) for name in Evaluation.model_fields})
        form = _require_form(store, candidate.form)
        _validate(form, candidate, enforce_window)

    updated = store.update_document(EVALUATION, evaluation_id, fields)
    logger.info("Updated evaluation %s fields %s", evaluation_id, sorted(fields))
    return updated


def delete_evaluation(store: Store, evaluation_id: str) -> None:
    store.delete_document(EVALUATION, evaluation_id)
    logger.info("Deleted evaluation %s", evaluation_id)


def evaluation_filter(form: Optional[str] = None, professor: Optional[str] = None, student: Optional[str] = None, group: Optional[str] = None, promotion: Optional[str] = None, subgroup: Optional[str] = None) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if form:
        filt["form"] = form
    if professor:
        filt["professor"] = professor
    if student:
        filt["$or"] = [{"student": student}, {"target_students": student}]
    if group:
        filt["group"] = group
    if promotion:
        filt["promotion"] = promotion
    if subgroup:
        filt["subgroup"] = subgroup
    return filt


def find_evaluations(store: Store, page: int = 1, limit: int = 10, **filters) -> Dict[str, Any]:
    return store.paginate(EVALUATION, evaluation_filter(**filters), page, limit)


def bulk_create(store: Store, request: BulkEvaluationRequest, enforce_window: bool = ENFORCE_FORM_WINDOW) -> Dict[str, Any]:
    """Create each item independently; one bad item never stops the others."""
    form = _require_form(store, request.form)
    created: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    for index, item in enumerate(request.evaluations):
        data = {
            "evaluation_type": form["association_type"],
            **item,
            "form": str(form["_id"]),
            "professor": item.get("professor") or request.professor,
        }
        try:
            candidate = Evaluation.model_validate(data)
            created.append(_insert(store, form, candidate, enforce_window))
        except ValidationError as exc:
            errors.append({
                "index": index,
                "error": "InvalidPayload",
                "message": "evaluation payload is malformed",
                "detail": {"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
            })
        except ServiceError as exc:
            errors.append({"index": index, **exc.to_dict()})
        except PyMongoError:
            logger.exception("Store failure on bulk item %d of form %s", index, form["_id"])
            errors.append({
                "index": index,
                "error": "ServerFault",
                "message": "Database operation failed",
                "detail": {},
            })
    logger.info("Bulk create on form %s: %d created, %d rejected", form["_id"], len(created), len(errors))
    return {"created": created, "errors": errors}


def validate_scores(store: Store, check: ScoreCheck) -> Dict[str, Any]:
    """Dry run: report every violation without writing anything."""
    form = _require_form(store, check.form)
    target_id = getattr(check, check.evaluation_type) if check.evaluation_type else None
    violations = collect_violations(form, check.evaluation_type, target_id, check.scores)
    return {"valid": not violations, "errors": [v.to_dict() for v in violations]}


# -------------------- Reporting -------------------- #

def _raw_values(score: Dict[str, Any]) -> List[float]:
    values = []
    if score.get("common_score") is not None:
        values.append(score["common_score"])
    values.extend(entry["score"] for entry in score.get("individual_scores") or [])
    return values


def compute_line_statistics(store: Store, form_id: str) -> Dict[str, Any]:
    """Count/average/min/max per line over every recorded raw score.

    Common and individual values share one pool per line, so a line scored
    once in common and three times individually contributes four values.
    """
    form = _require_form(store, form_id)
    fid = str(form["_id"])
    evaluations = list(store[EVALUATION].find({"form": fid}))
    pools: Dict[str, List[float]] = {line["id"]: [] for _, line in iter_lines(form)}
    for evaluation in evaluations:
        for score in evaluation.get("scores", []):
            if score["line_id"] in pools:
                pools[score["line_id"]].extend(_raw_values(score))

    lines = []
    for section, line in iter_lines(form):
        values = pools[line["id"]]
        lines.append({
            "line_id": line["id"],
            "section": section["title"],
            "title": line["title"],
            "max_score": line["max_score"],
            "type": line["type"],
            "notation_type": line["notation_type"],
            "count": len(values),
            "average": sum(values) / len(values) if values else None,
            "min": min(values) if values else None,
            "max": max(values) if values else None,
        })
    return {"form": fid, "title": form["title"], "total_evaluations": len(evaluations), "lines": lines}


def entity_label(kind: str, entity: Dict[str, Any]) -> str:
    if kind == STUDENT:
        return f"{entity.get('first_name', '')} {entity.get('last_name', '')} ({entity.get('student_number', '')})"
    if kind == PROMOTION:
        return f"{entity.get('name', '')} ({entity.get('year', '')})"
    return entity.get("name", "")


def _line_value(score: Dict[str, Any]) -> float:
    if score.get("common_score") is not None:
        return score["common_score"]
    individual = [entry["score"] for entry in score.get("individual_scores") or []]
    if individual:
        return round(sum(individual) / len(individual), 2)
    return 0


def export_csv(store: Store, form_id: str) -> str:
    form = _require_form(store, form_id)
    association_type = form["association_type"]
    kind = TARGET_KINDS[association_type]

    latest: Dict[str, Dict[str, float]] = {}
    cursor = store[EVALUATION].find({"form": str(form["_id"])}).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
    for evaluation in cursor:
        per_line = latest.setdefault(evaluation.get(association_type), {})
        for score in evaluation.get("scores", []):
            per_line[score["line_id"]] = _line_value(score)

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    lines = list(iter_lines(form))
    writer.writerow(["Entity"] + [
        f"{section['title']} - {line['title']} (/{line['max_score']:g})" for section, line in lines
    ])
    for entity in form_targets(store, form):
        recorded = latest.get(str(entity["_id"]), {})
        writer.writerow([entity_label(kind, entity)] + [
            f"{recorded.get(line['id'], 0):g}" for _, line in lines
        ])
    return buffer.getvalue()


def evaluation_context(store: Store, form_id: str) -> Dict[str, Any]:
    """A form's targets and roster next to the evaluations already recorded on it."""
    form = _require_form(store, form_id)
    fid = str(form["_id"])
    existing = list(store[EVALUATION].find({"form": fid}).sort([("created_at", DESCENDING), ("_id", DESCENDING)]))
    evaluated = set()
    for evaluation in existing:
        if evaluation.get("student"):
            evaluated.add(evaluation["student"])
        evaluated.update(evaluation.get("target_students") or [])
    return {
        "form": {
            "id": fid,
            "title": form["title"],
            "association_type": form["association_type"],
            "status": form_status(form),
            "targets": form_targets(store, form),
        },
        "roster": form_target_students(store, form),
        "existing_evaluations": existing,
        "stats": {"total_evaluations": len(existing), "evaluated_students": len(evaluated)},
    }


def overview(store: Store) -> Dict[str, Any]:
    total_forms = store[FORM].count_documents({})
    active_forms = store[FORM].count_documents(form_filter(valid_only=True))
    return {
        "students": store[STUDENT].count_documents({}),
        "promotions": store[PROMOTION].count_documents({}),
        "groups": store[GROUP].count_documents({}),
        "subgroups": store[SUBGROUP].count_documents({}),
        "forms": {"total": total_forms, "active": active_forms, "inactive": total_forms - active_forms},
        "evaluations": store[EVALUATION].count_documents({}),
    }


def _months_before(moment: datetime, months: int) -> datetime:
    index = moment.year * 12 + moment.month - 1 - months
    year, month = divmod(index, 12)
    day = min(moment.day, calendar.monthrange(year, month + 1)[1])
    return moment.replace(year=year, month=month + 1, day=day)


def student_statistics(store: Store) -> Dict[str, Any]:
    by_year = store[STUDENT].aggregate([
        {"$group": {"_id": "$year", "count": {"$sum": 1}}},
        {"$sort": {"_id": 1}},
    ])
    by_promotion = list(store[STUDENT].aggregate([
        {"$unwind": "$promotions"},
        {"$group": {"_id": "$promotions", "count": {"$sum": 1}}},
        {"$sort": {"count": -1, "_id": 1}},
    ]))
    promotions = {
        str(p["_id"]): p.get("name")
        for p in store.get_documents(PROMOTION, {"_id": {"$in": [to_object_id(row["_id"], PROMOTION) for row in by_promotion]}})
    }
    return {
        "total": store[STUDENT].count_documents({}),
        "by_year": [{"year": row["_id"], "count": row["count"]} for row in by_year],
        # memberships of deleted promotions are left out
        "by_promotion": [
            {"promotion": row["_id"], "name": promotions[row["_id"]], "count": row["count"]}
            for row in by_promotion if row["_id"] in promotions
        ],
    }


def form_statistics(store: Store, now: Optional[datetime] = None) -> Dict[str, Any]:
    total = store[FORM].count_documents({})
    active = store[FORM].count_documents(form_filter(valid_only=True, now=now))
    by_type = store[FORM].aggregate([
        {"$group": {"_id": "$association_type", "count": {"$sum": 1}}},
        {"$sort": {"count": -1, "_id": 1}},
    ])
    return {
        "total": total,
        "active": active,
        "inactive": total - active,
        "by_association_type": [{"association_type": row["_id"], "count": row["count"]} for row in by_type],
    }


def evaluation_statistics(store: Store, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Evaluation counts by type and by creation month over the last six months."""
    since = _months_before(now or datetime.utcnow(), 6)
    by_type = store[EVALUATION].aggregate([
        {"$group": {"_id": "$evaluation_type", "count": {"$sum": 1}}},
        {"$sort": {"count": -1, "_id": 1}},
    ])
    by_month = store[EVALUATION].aggregate([
        {"$match": {"created_at": {"$gte": since}}},
        {"$group": {
            "_id": {"year": {"$year": "$created_at"}, "month": {"$month": "$created_at"}},
            "count": {"$sum": 1},
        }},
        {"$sort": {"_id.year": 1, "_id.month": 1}},
    ])
    return {
        "total": store[EVALUATION].count_documents({}),
        "by_type": [{"evaluation_type": row["_id"], "count": row["count"]} for row in by_type],
        "by_month": [
            {"year": row["_id"]["year"], "month": row["_id"]["month"], "count": row["count"]}
            for row in by_month
        ],
    }


def promotion_statistics(store: Store, promotion_id: str) -> Dict[str, Any]:
    promotion = store.require_document(PROMOTION, promotion_id)
    pid = str(promotion["_id"])
    group_ids = [str(g["_id"]) for g in store[GROUP].find({"promotion": pid})]
    return {
        "promotion": {"id": pid, "name": promotion.get("name"), "year": promotion.get("year")},
        "students": store[STUDENT].count_documents({"promotions": pid}),
        "groups": len(group_ids),
        "subgroups": store[SUBGROUP].count_documents({"promotion": pid}),
        "evaluations": store[EVALUATION].count_documents({"promotion": pid}),
        # promotion-level assignment targets the promotion's groups
        "forms": store[FORM].count_documents({"$or": [{"promotion": pid}, {"groups": {"$in": group_ids}}]}),
    }
