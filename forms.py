"""
Scoring forms (rubrics): sections of lines, one exclusive target kind,
and a validity window.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from bson import ObjectId

from database import Store, collection_name
from directory import GROUP, PROMOTION, STUDENT, SUBGROUP, find_members_of, require_all
from errors import (
    FormInUseError,
    InvalidAssociationError,
    InvalidLineScoreError,
    InvalidSectionsError,
    InvalidWindowError,
    NotFoundError,
)
from schemas import ASSOCIATION_FIELDS, Evaluation, Form, FormUpdate, Line, Section

logger = logging.getLogger(__name__)

FORM = collection_name(Form)
EVALUATION = collection_name(Evaluation)

TARGET_KINDS = {"student": STUDENT, "group": GROUP, "subgroup": SUBGROUP, "promotion": PROMOTION}
SCALE_MAX = 8


def check_window(valid_from: datetime, valid_to: datetime) -> None:
    if valid_from >= valid_to:
        raise InvalidWindowError(
            "valid_to must be strictly after valid_from",
            {"valid_from": valid_from.isoformat(), "valid_to": valid_to.isoformat()},
        )


def check_line(line: Line, position: Dict[str, Any]) -> None:
    detail = {**position, "type": line.type, "max_score": line.max_score}
    if line.max_score < 0:
        raise InvalidLineScoreError("max_score cannot be negative", detail)
    if line.type == "binary" and line.max_score != 1:
        raise InvalidLineScoreError("binary lines are scored out of 1", detail)
    if line.type == "scale" and line.max_score > SCALE_MAX:
        raise InvalidLineScoreError(f"scale lines are scored between 0 and {SCALE_MAX}", detail)


def check_sections(sections: List[Section]) -> None:
    if not sections:
        raise InvalidSectionsError("a form needs at least one section")
    for si, section in enumerate(sections):
        if not section.title.strip():
            raise InvalidSectionsError("every section needs a title", {"section": si})
        if not section.lines:
            raise InvalidSectionsError("every section needs at least one line", {"section": si, "title": section.title})
        for li, line in enumerate(section.lines):
            if not line.title.strip():
                raise InvalidSectionsError("every line needs a title", {"section": si, "line": li})
            check_line(line, {"section": si, "line": li, "title": line.title})


def assign_line_ids(sections: List[Section], known_ids: Optional[set] = None) -> List[Dict[str, Any]]:
    """Serialize sections, keeping ids already known to the form and minting the rest."""
    known_ids = known_ids or set()
    seen = set()
    out = []
    for section in sections:
        lines = []
        for line in section.lines:
            data = line.model_dump()
            if data.get("id") not in known_ids or data["id"] in seen:
                data["id"] = str(ObjectId())
            seen.add(data["id"])
            lines.append(data)
        out.append({"title": section.title, "lines": lines})
    return out


def check_association(store: Store, association_type: str, students: List[str], groups: List[str], subgroups: List[str], promotion: Optional[str]) -> Dict[str, Any]:
    """Validate the exclusive target and return the four association fields, normalized."""
    values = {"students": students or [], "groups": groups or [], "subgroups": subgroups or [], "promotion": promotion}
    populated = sorted(kind for kind, field in ASSOCIATION_FIELDS.items() if values[field])
    if len(populated) > 1:
        raise InvalidAssociationError(
            "a form targets exactly one of students, groups, subgroups or a promotion",
            {"populated": populated},
        )
    if populated != [association_type]:
        raise InvalidAssociationError(
            f"a {association_type} form must name at least one {association_type}",
            {"association_type": association_type, "populated": populated},
        )
    kind = TARGET_KINDS[association_type]
    if association_type == "promotion":
        store.require_document(kind, promotion)
    else:
        field = ASSOCIATION_FIELDS[association_type]
        values[field] = require_all(store, kind, values[field])
    return values


def targets_of(form: Dict[str, Any]) -> List[str]:
    association_type = form["association_type"]
    if association_type == "promotion":
        return [form["promotion"]] if form.get("promotion") else []
    return list(form.get(ASSOCIATION_FIELDS[association_type]) or [])


def iter_lines(form: Dict[str, Any]) -> Iterator[Tuple[Dict[str, Any], Dict[str, Any]]]:
    for section in form.get("sections", []):
        for line in section.get("lines", []):
            yield section, line


def _referenced_line_ids(store: Store, form_id: str) -> set:
    referenced = set()
    for evaluation in store[EVALUATION].find({"form": form_id}):
        referenced.update(score["line_id"] for score in evaluation.get("scores", []))
    return referenced


# -------------------- CRUD -------------------- #

def create_form(store: Store, payload: Form) -> Dict[str, Any]:
    check_window(payload.valid_from, payload.valid_to)
    check_sections(payload.sections)
    association = check_association(
        store, payload.association_type, payload.students, payload.groups, payload.subgroups, payload.promotion
    )
    doc = {**payload.model_dump(), **association, "sections": assign_line_ids(payload.sections)}
    fid = store.create_document(FORM, doc)
    logger.info("Created %s form %s (%s)", payload.association_type, fid, payload.title)
    return store.get_document(FORM, fid)


def get_form(store: Store, form_id: str) -> Dict[str, Any]:
    return store.require_document(FORM, form_id)


def update_form(store: Store, form_id: str, patch: FormUpdate) -> Dict[str, Any]:
    form = store.require_document(FORM, form_id)
    fid = str(form["_id"])
    fields = {k: v for k, v in patch.model_dump(exclude_unset=True).items() if v is not None or k == "promotion"}
    in_use = store[EVALUATION].count_documents({"form": fid}) > 0

    if "valid_from" in fields or "valid_to" in fields:
        check_window(fields.get("valid_from", form["valid_from"]), fields.get("valid_to", form["valid_to"]))

    target_fields = ("students", "groups", "subgroups", "promotion")
    if "association_type" in fields or any(k in fields for k in target_fields):
        new_type = fields.get("association_type", form["association_type"])
        if new_type != form["association_type"]:
            if in_use:
                raise FormInUseError(
                    "cannot change the target kind of a form that already has evaluations",
                    {"form": fid, "association_type": form["association_type"]},
                )
            base = {"students": [], "groups": [], "subgroups": [], "promotion": None}
        else:
            base = {k: form.get(k) for k in target_fields}
        base.update({k: fields[k] for k in target_fields if k in fields})
        fields.update(check_association(store, new_type, **base))
        fields["association_type"] = new_type

    if "sections" in fields:
        check_sections(patch.sections)
        known = {line["id"] for _, line in iter_lines(form)}
        sections = assign_line_ids(patch.sections, known)
        if in_use:
            kept = {line["id"] for s in sections for line in s["lines"]}
            dropped = sorted(_referenced_line_ids(store, fid) - kept)
            if dropped:
                raise FormInUseError(
                    "cannot remove lines that existing evaluations have scored",
                    {"form": fid, "line_ids": dropped},
                )
        fields["sections"] = sections

    updated = store.update_document(FORM, fid, fields)
    logger.info("Updated form %s fields %s", fid, sorted(fields))
    return updated


def assign_form(store: Store, form_id: str, level: str, target_id: str) -> Dict[str, Any]:
    """Point a form at a single entity of the given kind.

    A promotion is assigned through its groups: the form becomes a group
    form over every group the promotion owns.
    """
    if level == "promotion":
        promotion = store.require_document(PROMOTION, target_id)
        pid = str(promotion["_id"])
        groups = [str(g["_id"]) for g in store[GROUP].find({"promotion": pid}).sort("_id", 1)]
        if not groups:
            raise InvalidAssociationError(
                "promotion has no groups to assign the form to",
                {"promotion": pid},
            )
        return update_form(store, form_id, FormUpdate(association_type="group", groups=groups))
    field = ASSOCIATION_FIELDS[level]
    return update_form(store, form_id, FormUpdate(association_type=level, **{field: [target_id]}))


def delete_form(store: Store, form_id: str) -> None:
    # evaluations stay as the historical record
    store.delete_document(FORM, form_id)
    logger.info("Deleted form %s", form_id)


def form_status(form: Dict[str, Any], now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    if now < form["valid_from"]:
        return "future"
    if now >= form["valid_to"]:
        return "expired"
    return "active"


def form_filter(association_type: Optional[str] = None, professor: Optional[str] = None, valid_only: bool = False, now: Optional[datetime] = None) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if association_type:
        filt["association_type"] = association_type
    if professor:
        filt["professor"] = professor
    if valid_only:
        now = now or datetime.utcnow()
        filt["valid_from"] = {"$lte": now}
        filt["valid_to"] = {"$gt": now}
    return filt


def list_forms(store: Store, page: int = 1, limit: int = 10, **filters) -> Dict[str, Any]:
    return store.paginate(FORM, form_filter(**filters), page, limit)


# -------------------- Views -------------------- #

def form_criteria(form: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {
            "id": line["id"],
            "section": section["title"],
            "title": line["title"],
            "max_score": line["max_score"],
            "type": line["type"],
            "notation_type": line["notation_type"],
        }
        for section, line in iter_lines(form)
    ]


def export_template(form: Dict[str, Any]) -> List[float]:
    return [line["max_score"] for _, line in iter_lines(form)]


def form_targets(store: Store, form: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Target entity documents; targets deleted since the form was written are skipped."""
    kind = TARGET_KINDS[form["association_type"]]
    docs = (store.get_document(kind, target_id) for target_id in targets_of(form))
    return [doc for doc in docs if doc is not None]


def form_target_students(store: Store, form: Dict[str, Any]) -> List[Dict[str, Any]]:
    kind = TARGET_KINDS[form["association_type"]]
    students: Dict[Any, Dict[str, Any]] = {}
    for target in form_targets(store, form):
        try:
            members = find_members_of(store, kind, str(target["_id"]))
        except NotFoundError:
            continue
        for student in members:
            students.setdefault(student["_id"], student)
    return list(students.values())
