"""
Entity directory: promotions, groups, subgroups and students.

Relations kept on both sides (promotion.groups / group.promotion,
group.subgroups / subgroup.group, subgroup.students / student.subgroups)
are written by the functions here, never by a generic save hook. Every
relation write uses $addToSet / $pull so replaying it is harmless, and
when the second half of a paired write fails the first half is undone.
Anything left behind by a crash between the two writes is fixed by
`reconcile_memberships`.
"""

import logging
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import Store, collection_name, to_object_id
from errors import (
    ConflictError,
    DeletionBlockedError,
    InvalidRelationError,
)
from schemas import (
    Group,
    GroupUpdate,
    Promotion,
    PromotionUpdate,
    Student,
    StudentUpdate,
    SubGroup,
    SubGroupUpdate,
)

logger = logging.getLogger(__name__)

PROMOTION = collection_name(Promotion)
GROUP = collection_name(Group)
SUBGROUP = collection_name(SubGroup)
STUDENT = collection_name(Student)

KINDS = (PROMOTION, GROUP, SUBGROUP, STUDENT)


class _Link(NamedTuple):
    parent_field: Optional[str]  # list of child ids on the parent, if any
    child_field: str  # back-reference on the child
    owned: bool  # child_field is the child's single owner


_LINKS: Dict[tuple, _Link] = {
    (PROMOTION, GROUP): _Link("groups", "promotion", True),
    (GROUP, SUBGROUP): _Link("subgroups", "group", True),
    (SUBGROUP, STUDENT): _Link("students", "subgroups", False),
    (PROMOTION, STUDENT): _Link(None, "promotions", False),
    (GROUP, STUDENT): _Link(None, "groups", False),
}

# student fields that must point inside the matching membership list
_CURRENT_POINTERS = {"current_promotion": "promotions", "current_group": "groups"}


def _add_to(store: Store, kind: str, doc_id: Any, field: str, value: str) -> None:
    store[kind].update_one({"_id": to_object_id(doc_id, kind)}, {"$addToSet": {field: value}})


def _pull_from(store: Store, kind: str, doc_id: Any, field: str, value: str) -> None:
    store[kind].update_one({"_id": to_object_id(doc_id, kind)}, {"$pull": {field: value}})


def _paired_write(first: Callable[[], Any], second: Callable[[], Any], undo_first: Callable[[], Any]) -> None:
    first()
    try:
        second()
    except PyMongoError:
        logger.warning("Second half of a relation write failed, undoing the first half")
        undo_first()
        raise


def require_all(store: Store, kind: str, ids: List[str]) -> List[str]:
    """Check that every id exists and return them de-duplicated, order kept."""
    unique = list(dict.fromkeys(ids))
    for doc_id in unique:
        store.require_document(kind, doc_id)
    return unique


def _check_current_pointers(doc: Dict[str, Any]) -> None:
    for pointer, members in _CURRENT_POINTERS.items():
        current = doc.get(pointer)
        if current and current not in (doc.get(members) or []):
            raise InvalidRelationError(
                f"{pointer} must be one of the student's {members}",
                {"field": pointer, "value": current},
            )


def _patch_fields(patch: BaseModel, nullable: tuple = ()) -> Dict[str, Any]:
    """Fields explicitly sent in an update; null only clears the optional ones."""
    return {
        k: v for k, v in patch.model_dump(exclude_unset=True).items()
        if v is not None or k in nullable
    }


# -------------------- Generic relations -------------------- #

def _link_for(parent_kind: str, child_kind: str) -> _Link:
    link = _LINKS.get((parent_kind, child_kind))
    if link is None:
        raise InvalidRelationError(
            f"{child_kind} cannot be attached to {parent_kind}",
            {"parent_kind": parent_kind, "child_kind": child_kind},
        )
    return link


def attach(store: Store, parent_kind: str, parent_id: str, child_kind: str, child_id: str) -> None:
    link = _link_for(parent_kind, child_kind)
    parent = store.require_document(parent_kind, parent_id)
    child = store.require_document(child_kind, child_id)
    pid, cid = str(parent["_id"]), str(child["_id"])

    if not link.owned:
        def add_child():
            _add_to(store, child_kind, cid, link.child_field, pid)

        if link.parent_field is None:
            add_child()
            return
        _paired_write(
            add_child,
            lambda: _add_to(store, parent_kind, pid, link.parent_field, cid),
            lambda: _pull_from(store, child_kind, cid, link.child_field, pid),
        )
        return

    previous = child.get(link.child_field)
    _paired_write(
        lambda: store[child_kind].update_one({"_id": child["_id"]}, {"$set": {link.child_field: pid}}),
        lambda: _add_to(store, parent_kind, pid, link.parent_field, cid),
        lambda: store[child_kind].update_one({"_id": child["_id"]}, {"$set": {link.child_field: previous}}),
    )
    if previous and previous != pid:
        _pull_from(store, parent_kind, previous, link.parent_field, cid)
    if parent_kind == PROMOTION and child_kind == GROUP:
        # subgroups carry their group's promotion
        store[SUBGROUP].update_many({"group": cid}, {"$set": {"promotion": pid}})
    elif parent_kind == GROUP and child_kind == SUBGROUP:
        store[SUBGROUP].update_one({"_id": child["_id"]}, {"$set": {"promotion": parent.get("promotion")}})
    logger.info("Attached %s %s to %s %s", child_kind, cid, parent_kind, pid)


def detach(store: Store, parent_kind: str, parent_id: str, child_kind: str, child_id: str) -> None:
    link = _link_for(parent_kind, child_kind)
    if link.owned:
        raise InvalidRelationError(
            f"a {child_kind} always belongs to one {parent_kind}; attach it elsewhere instead",
            {"parent_kind": parent_kind, "child_kind": child_kind},
        )
    parent = store.require_document(parent_kind, parent_id)
    child = store.require_document(child_kind, child_id)
    pid, cid = str(parent["_id"]), str(child["_id"])

    child_update: Dict[str, Any] = {"$pull": {link.child_field: pid}}
    for pointer, members in _CURRENT_POINTERS.items():
        if members == link.child_field and child.get(pointer) == pid:
            child_update["$set"] = {pointer: None}

    def pull_child():
        store[child_kind].update_one({"_id": child["_id"]}, child_update)

    if link.parent_field is None:
        pull_child()
        return
    _paired_write(
        lambda: _pull_from(store, parent_kind, pid, link.parent_field, cid),
        pull_child,
        lambda: _add_to(store, parent_kind, pid, link.parent_field, cid),
    )
    logger.info("Detached %s %s from %s %s", child_kind, cid, parent_kind, pid)


def find_members_of(store: Store, kind: str, entity_id: str, transitive: bool = True) -> List[Dict[str, Any]]:
    """Students belonging to an entity.

    Promotion and group membership is either direct (the student lists the
    entity) or, when `transitive` is set, inherited through the entity's
    groups and subgroups. Subgroup membership is the subgroup's own list.
    """
    if kind not in KINDS:
        raise InvalidRelationError(f"unknown entity kind {kind}", {"kind": kind})
    entity = store.require_document(kind, entity_id)
    eid = str(entity["_id"])
    students = store[STUDENT]
    order = [("last_name", 1), ("first_name", 1)]

    if kind == STUDENT:
        return [entity]
    if kind == SUBGROUP:
        oids = [to_object_id(s, STUDENT) for s in entity.get("students", [])]
        return list(students.find({"_id": {"$in": oids}}).sort(order))

    if kind == GROUP:
        clauses: List[Dict[str, Any]] = [{"groups": eid}]
        if transitive:
            sub_ids = [str(s["_id"]) for s in store[SUBGROUP].find({"group": eid})]
            clauses.append({"subgroups": {"$in": sub_ids}})
    else:
        clauses = [{"promotions": eid}]
        if transitive:
            group_ids = [str(g["_id"]) for g in store[GROUP].find({"promotion": eid})]
            sub_ids = [str(s["_id"]) for s in store[SUBGROUP].find({"promotion": eid})]
            clauses.append({"groups": {"$in": group_ids}})
            clauses.append({"subgroups": {"$in": sub_ids}})
    return list(students.find({"$or": clauses}).sort(order))


def reconcile_memberships(store: Store) -> Dict[str, int]:
    """Rebuild every two-sided list and the denormalized subgroup promotion from
    their owning side; returns fixes per collection.
    """
    fixed = {PROMOTION: 0, GROUP: 0, SUBGROUP: 0, STUDENT: 0}

    for promo in store[PROMOTION].find():
        expected = sorted(str(g["_id"]) for g in store[GROUP].find({"promotion": str(promo["_id"])}))
        if sorted(promo.get("groups", [])) != expected:
            store[PROMOTION].update_one({"_id": promo["_id"]}, {"$set": {"groups": expected}})
            fixed[PROMOTION] += 1

    for group in store[GROUP].find():
        expected = sorted(str(s["_id"]) for s in store[SUBGROUP].find({"group": str(group["_id"])}))
        if sorted(group.get("subgroups", [])) != expected:
            store[GROUP].update_one({"_id": group["_id"]}, {"$set": {"subgroups": expected}})
            fixed[GROUP] += 1
        stale = store[SUBGROUP].update_many(
            {"group": str(group["_id"]), "promotion": {"$ne": group.get("promotion")}},
            {"$set": {"promotion": group.get("promotion")}},
        )
        fixed[SUBGROUP] += stale.modified_count

    for student in store[STUDENT].find():
        expected = sorted(str(s["_id"]) for s in store[SUBGROUP].find({"students": str(student["_id"])}))
        if sorted(student.get("subgroups", [])) != expected:
            store[STUDENT].update_one({"_id": student["_id"]}, {"$set": {"subgroups": expected}})
            fixed[STUDENT] += 1

    if any(fixed.values()):
        logger.warning("Membership repair fixed %s", fixed)
    return fixed


# -------------------- Promotions -------------------- #

def create_promotion(store: Store, payload: Promotion) -> Dict[str, Any]:
    pid = store.create_document(PROMOTION, {**payload.model_dump(), "groups": []})
    logger.info("Created promotion %s (%s)", pid, payload.name)
    return store.get_document(PROMOTION, pid)


def update_promotion(store: Store, promotion_id: str, patch: PromotionUpdate) -> Dict[str, Any]:
    return store.update_document(PROMOTION, promotion_id, _patch_fields(patch, ("description",)))


def delete_promotion(store: Store, promotion_id: str) -> None:
    # groups keep their (now dangling) promotion reference
    store.delete_document(PROMOTION, promotion_id)
    logger.info("Deleted promotion %s", promotion_id)


# -------------------- Groups -------------------- #

def create_group(store: Store, payload: Group) -> Dict[str, Any]:
    promotion = store.require_document(PROMOTION, payload.promotion)
    gid = store.create_document(GROUP, {**payload.model_dump(), "promotion": str(promotion["_id"]), "subgroups": []})
    try:
        _add_to(store, PROMOTION, promotion["_id"], "groups", gid)
    except PyMongoError:
        store[GROUP].delete_one({"_id": to_object_id(gid, GROUP)})
        raise
    logger.info("Created group %s in promotion %s", gid, promotion["_id"])
    return store.get_document(GROUP, gid)


def update_group(store: Store, group_id: str, patch: GroupUpdate) -> Dict[str, Any]:
    group = store.require_document(GROUP, group_id)
    fields = _patch_fields(patch, ("description",))
    new_promotion = fields.pop("promotion", None)
    if new_promotion and new_promotion != group.get("promotion"):
        attach(store, PROMOTION, new_promotion, GROUP, str(group["_id"]))
    if fields:
        return store.update_document(GROUP, group_id, fields)
    return store.require_document(GROUP, group_id)


def delete_group(store: Store, group_id: str) -> None:
    group = store.require_document(GROUP, group_id)
    gid = str(group["_id"])
    owned = store[SUBGROUP].count_documents({"group": gid})
    if group.get("subgroups") or owned:
        raise DeletionBlockedError(
            "group still owns subgroups; delete them first",
            {"group": gid, "subgroups": max(owned, len(group.get("subgroups", [])))},
        )
    store.delete_document(GROUP, gid)
    if group.get("promotion"):
        _pull_from(store, PROMOTION, group["promotion"], "groups", gid)
    store[STUDENT].update_many({"current_group": gid}, {"$set": {"current_group": None}})
    store[STUDENT].update_many({"groups": gid}, {"$pull": {"groups": gid}})
    logger.info("Deleted group %s", gid)


# -------------------- Subgroups -------------------- #

def create_subgroup(store: Store, payload: SubGroup) -> Dict[str, Any]:
    group = store.require_document(GROUP, payload.group)
    gid = str(group["_id"])
    members = require_all(store, STUDENT, payload.students)
    doc = {**payload.model_dump(), "group": gid, "promotion": group.get("promotion"), "students": members}
    sid = store.create_document(SUBGROUP, doc)
    member_oids = [to_object_id(m, STUDENT) for m in members]
    try:
        _paired_write(
            lambda: _add_to(store, GROUP, gid, "subgroups", sid),
            lambda: store[STUDENT].update_many({"_id": {"$in": member_oids}}, {"$addToSet": {"subgroups": sid}}),
            lambda: _pull_from(store, GROUP, gid, "subgroups", sid),
        )
    except PyMongoError:
        store[SUBGROUP].delete_one({"_id": to_object_id(sid, SUBGROUP)})
        raise
    logger.info("Created subgroup %s in group %s with %d students", sid, gid, len(members))
    return store.get_document(SUBGROUP, sid)


def update_subgroup(store: Store, subgroup_id: str, patch: SubGroupUpdate) -> Dict[str, Any]:
    subgroup = store.require_document(SUBGROUP, subgroup_id)
    sid = str(subgroup["_id"])
    fields = _patch_fields(patch)
    if "students" not in fields:
        return store.update_document(SUBGROUP, sid, fields) if fields else subgroup

    new_members = require_all(store, STUDENT, fields["students"])
    fields["students"] = new_members
    old_members = subgroup.get("students", [])
    removed = [to_object_id(s, STUDENT) for s in old_members if s not in new_members]
    added = [to_object_id(s, STUDENT) for s in new_members if s not in old_members]

    updated = store.update_document(SUBGROUP, sid, fields)
    if removed:
        store[STUDENT].update_many({"_id": {"$in": removed}}, {"$pull": {"subgroups": sid}})
    if added:
        store[STUDENT].update_many({"_id": {"$in": added}}, {"$addToSet": {"subgroups": sid}})
    return updated


def delete_subgroup(store: Store, subgroup_id: str) -> None:
    subgroup = store.delete_document(SUBGROUP, subgroup_id)
    sid = str(subgroup["_id"])
    if subgroup.get("group"):
        _pull_from(store, GROUP, subgroup["group"], "subgroups", sid)
    store[STUDENT].update_many({"subgroups": sid}, {"$pull": {"subgroups": sid}})
    logger.info("Deleted subgroup %s", sid)


# -------------------- Students -------------------- #

def _check_student_number(store: Store, number: str, exclude_id: Any = None) -> None:
    filt: Dict[str, Any] = {"student_number": number}
    if exclude_id is not None:
        filt["_id"] = {"$ne": exclude_id}
    if store[STUDENT].find_one(filt):
        raise ConflictError(f"student number {number} already exists", {"student_number": number})


def create_student(store: Store, payload: Student) -> Dict[str, Any]:
    doc = payload.model_dump()
    doc["promotions"] = require_all(store, PROMOTION, doc["promotions"])
    doc["groups"] = require_all(store, GROUP, doc["groups"])
    doc["subgroups"] = []
    _check_current_pointers(doc)
    _check_student_number(store, payload.student_number)
    try:
        sid = store.create_document(STUDENT, doc)
    except DuplicateKeyError:
        raise ConflictError(
            f"student number {payload.student_number} already exists",
            {"student_number": payload.student_number},
        )
    logger.info("Created student %s (%s)", sid, payload.student_number)
    return store.get_document(STUDENT, sid)


def update_student(store: Store, student_id: str, patch: StudentUpdate) -> Dict[str, Any]:
    student = store.require_document(STUDENT, student_id)
    fields = _patch_fields(patch, ("current_promotion", "current_group"))
    if "promotions" in fields:
        fields["promotions"] = require_all(store, PROMOTION, fields["promotions"] or [])
    if "groups" in fields:
        fields["groups"] = require_all(store, GROUP, fields["groups"] or [])
    _check_current_pointers({**student, **fields})
    if fields.get("student_number") and fields["student_number"] != student.get("student_number"):
        _check_student_number(store, fields["student_number"], exclude_id=student["_id"])
    return store.update_document(STUDENT, student_id, fields)


def delete_student(store: Store, student_id: str) -> None:
    student = store.delete_document(STUDENT, student_id)
    sid = str(student["_id"])
    store[SUBGROUP].update_many({"students": sid}, {"$pull": {"students": sid}})
    logger.info("Deleted student %s", sid)


def student_filter(year: Optional[str] = None, promotion: Optional[str] = None, group: Optional[str] = None, subgroup: Optional[str] = None) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if year:
        filt["year"] = year
    if promotion:
        filt["promotions"] = promotion
    if group:
        filt["groups"] = group
    if subgroup:
        filt["subgroups"] = subgroup
    return filt
