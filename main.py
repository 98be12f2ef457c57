import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from jose import JWTError, jwt
from pymongo.errors import PyMongoError

import directory
import evaluations
import forms
from database import DATABASE_NAME, DATABASE_URL, Store, serialize_doc, serialize_list
from errors import register_exception_handlers
from schemas import (
    BulkEvaluationRequest,
    Evaluation,
    EvaluationUpdate,
    Form,
    FormAssignment,
    FormUpdate,
    Group,
    GroupUpdate,
    Promotion,
    PromotionUpdate,
    Relation,
    ScoreCheck,
    Student,
    StudentUpdate,
    SubGroup,
    SubGroupUpdate,
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # A store injected before startup (tests, scripts) is left to its owner.
    owned = getattr(app.state, "store", None) is None
    if owned:
        app.state.store = Store.open(DATABASE_URL, DATABASE_NAME)
    yield
    if owned:
        app.state.store.close()
        app.state.store = None


app = FastAPI(title="Evaluation Management API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)


def get_store(request: Request) -> Store:
    return request.app.state.store


# -------------------- Auth -------------------- #
SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-key-change-me")
ALGORITHM = "HS256"
ADMIN = "admin"
PROFESSOR = "professor"


async def get_current_user(request: Request) -> Optional[Dict[str, Any]]:
    """Return decoded JWT user if present, else None. Enforcement is left to require_roles."""
    auth = request.headers.get("authorization") or request.headers.get("Authorization")
    if not auth or not auth.lower().startswith("bearer "):
        return None
    token = auth.split(" ", 1)[1]
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])  # sub, role
    except JWTError:
        return None


def require_roles(*roles: str):
    async def _dep(user: Optional[Dict[str, Any]] = Depends(get_current_user)):
        if user is None:
            raise HTTPException(status_code=401, detail="Not authenticated")
        if roles and user.get("role") not in roles:
            raise HTTPException(status_code=403, detail="Forbidden for role")
        return user
    return _dep


authenticated = require_roles()
admin_only = require_roles(ADMIN)
staff = require_roles(PROFESSOR, ADMIN)


# -------------------- Request logging -------------------- #
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = datetime.utcnow()
    response = await call_next(request)
    elapsed = (datetime.utcnow() - start).total_seconds() * 1000
    logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed)
    return response


def page_of(result: Dict[str, Any]) -> Dict[str, Any]:
    return {"items": serialize_list(result["items"]), "pagination": result["pagination"]}


# -------------------- Meta endpoints -------------------- #

@app.get("/")
def read_root():
    return {"message": "Evaluation Management Backend is running"}


@app.get("/schema")
def get_schema():
    models = [Promotion, Group, SubGroup, Student, Form, Evaluation]
    return {m.__name__: m.model_json_schema() for m in models}


@app.get("/health")
def health(store: Store = Depends(get_store)):
    response = {"backend": "running", "database": "unavailable", "collections": []}
    try:
        response["collections"] = sorted(store.db.list_collection_names())[:50]
        response["database"] = "connected"
    except PyMongoError as e:
        response["database"] = f"error: {str(e)[:80]}"
    return response


# -------------------- Promotions -------------------- #

@app.post("/promotions", status_code=201)
def add_promotion(payload: Promotion, store: Store = Depends(get_store), user=Depends(admin_only)):
    return serialize_doc(directory.create_promotion(store, payload))


@app.get("/promotions")
def list_promotions(page: int = Query(1, ge=1), limit: int = Query(10, ge=1), store: Store = Depends(get_store), user=Depends(authenticated)):
    return page_of(store.paginate(directory.PROMOTION, None, page, limit))


@app.get("/promotions/{promotion_id}")
def get_promotion(promotion_id: str, store: Store = Depends(get_store), user=Depends(authenticated)):
    return serialize_doc(store.require_document(directory.PROMOTION, promotion_id))


@app.put("/promotions/{promotion_id}")
def update_promotion(promotion_id: str, payload: PromotionUpdate, store: Store = Depends(get_store), user=Depends(admin_only)):
    return serialize_doc(directory.update_promotion(store, promotion_id, payload))


@app.delete("/promotions/{promotion_id}")
def delete_promotion(promotion_id: str, store: Store = Depends(get_store), user=Depends(admin_only)):
    directory.delete_promotion(store, promotion_id)
    return {"status": "deleted", "id": promotion_id}


@app.get("/promotions/{promotion_id}/groups")
def promotion_groups(promotion_id: str, store: Store = Depends(get_store), user=Depends(authenticated)):
    store.require_document(directory.PROMOTION, promotion_id)
    return serialize_list(store.get_documents(directory.GROUP, {"promotion": promotion_id}))


@app.get("/promotions/{promotion_id}/students")
def promotion_students(promotion_id: str, transitive: bool = True, store: Store = Depends(get_store), user=Depends(authenticated)):
    return serialize_list(directory.find_members_of(store, directory.PROMOTION, promotion_id, transitive))


# -------------------- Groups -------------------- #

@app.post("/groups", status_code=201)
def add_group(payload: Group, store: Store = Depends(get_store), user=Depends(admin_only)):
    return serialize_doc(directory.create_group(store, payload))


@app.get("/groups")
def list_groups(promotion: Optional[str] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1), store: Store = Depends(get_store), user=Depends(authenticated)):
    filt = {"promotion": promotion} if promotion else None
    return page_of(store.paginate(directory.GROUP, filt, page, limit))


@app.get("/groups/{group_id}")
def get_group(group_id: str, store: Store = Depends(get_store), user=Depends(authenticated)):
    return serialize_doc(store.require_document(directory.GROUP, group_id))


@app.put("/groups/{group_id}")
def update_group(group_id: str, payload: GroupUpdate, store: Store = Depends(get_store), user=Depends(admin_only)):
    return serialize_doc(directory.update_group(store, group_id, payload))


@app.delete("/groups/{group_id}")
def delete_group(group_id: str, store: Store = Depends(get_store), user=Depends(admin_only)):
    directory.delete_group(store, group_id)
    return {"status": "deleted", "id": group_id}


@app.get("/groups/{group_id}/subgroups")
def group_subgroups(group_id: str, store: Store = Depends(get_store), user=Depends(authenticated)):
    store.require_document(directory.GROUP, group_id)
    return serialize_list(store.get_documents(directory.SUBGROUP, {"group": group_id}))


@app.get("/groups/{group_id}/students")
def group_students(group_id: str, transitive: bool = True, store: Store = Depends(get_store), user=Depends(authenticated)):
    return serialize_list(directory.find_members_of(store, directory.GROUP, group_id, transitive))


# -------------------- Subgroups -------------------- #

@app.post("/subgroups", status_code=201)
def add_subgroup(payload: SubGroup, store: Store = Depends(get_store), user=Depends(admin_only)):
    return serialize_doc(directory.create_subgroup(store, payload))


@app.get("/subgroups")
def list_subgroups(group: Optional[str] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1), store: Store = Depends(get_store), user=Depends(authenticated)):
    filt = {"group": group} if group else None
    return page_of(store.paginate(directory.SUBGROUP, filt, page, limit))


@app.get("/subgroups/{subgroup_id}")
def get_subgroup(subgroup_id: str, store: Store = Depends(get_store), user=Depends(authenticated)):
    return serialize_doc(store.require_document(directory.SUBGROUP, subgroup_id))


@app.put("/subgroups/{subgroup_id}")
def update_subgroup(subgroup_id: str, payload: SubGroupUpdate, store: Store = Depends(get_store), user=Depends(admin_only)):
    return serialize_doc(directory.update_subgroup(store, subgroup_id, payload))


@app.delete("/subgroups/{subgroup_id}")
def delete_subgroup(subgroup_id: str, store: Store = Depends(get_store), user=Depends(admin_only)):
    directory.delete_subgroup(store, subgroup_id)
    return {"status": "deleted", "id": subgroup_id}


@app.get("/subgroups/{subgroup_id}/students")
def subgroup_students(subgroup_id: str, store: Store = Depends(get_store), user=Depends(authenticated)):
    return serialize_list(directory.find_members_of(store, directory.SUBGROUP, subgroup_id))


# -------------------- Students -------------------- #

@app.post("/students", status_code=201)
def add_student(payload: Student, store: Store = Depends(get_store), user=Depends(admin_only)):
    return serialize_doc(directory.create_student(store, payload))


@app.get("/students")
def list_students(year: Optional[str] = None, promotion: Optional[str] = None, group: Optional[str] = None, subgroup: Optional[str] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1), store: Store = Depends(get_store), user=Depends(authenticated)):
    filt = directory.student_filter(year, promotion, group, subgroup)
    return page_of(store.paginate(directory.STUDENT, filt, page, limit))


@app.get("/students/{student_id}")
def get_student(student_id: str, store: Store = Depends(get_store), user=Depends(authenticated)):
    return serialize_doc(store.require_document(directory.STUDENT, student_id))


@app.put("/students/{student_id}")
def update_student(student_id: str, payload: StudentUpdate, store: Store = Depends(get_store), user=Depends(admin_only)):
    return serialize_doc(directory.update_student(store, student_id, payload))


@app.delete("/students/{student_id}")
def delete_student(student_id: str, store: Store = Depends(get_store), user=Depends(admin_only)):
    directory.delete_student(store, student_id)
    return {"status": "deleted", "id": student_id}


# -------------------- Relations -------------------- #

@app.post("/relations/attach")
def attach_relation(payload: Relation, store: Store = Depends(get_store), user=Depends(admin_only)):
    directory.attach(store, payload.parent_kind, payload.parent_id, payload.child_kind, payload.child_id)
    return {"status": "attached", **payload.model_dump()}


@app.post("/relations/detach")
def detach_relation(payload: Relation, store: Store = Depends(get_store), user=Depends(admin_only)):
    directory.detach(store, payload.parent_kind, payload.parent_id, payload.child_kind, payload.child_id)
    return {"status": "detached", **payload.model_dump()}


@app.post("/relations/reconcile")
def reconcile_relations(store: Store = Depends(get_store), user=Depends(admin_only)):
    return {"fixed": directory.reconcile_memberships(store)}


# -------------------- Forms -------------------- #

def form_view(form: Dict[str, Any]) -> Dict[str, Any]:
    return {**serialize_doc(form), "status": forms.form_status(form)}


@app.post("/forms", status_code=201)
def add_form(payload: Form, store: Store = Depends(get_store), user=Depends(staff)):
    if not payload.professor:
        payload = payload.model_copy(update={"professor": user.get("sub")})
    return form_view(forms.create_form(store, payload))


@app.get("/forms")
def list_forms(association_type: Optional[str] = None, professor: Optional[str] = None, valid_only: bool = False, page: int = Query(1, ge=1), limit: int = Query(10, ge=1), store: Store = Depends(get_store), user=Depends(authenticated)):
    result = forms.list_forms(store, page, limit, association_type=association_type, professor=professor, valid_only=valid_only)
    return {"items": [form_view(f) for f in result["items"]], "pagination": result["pagination"]}


@app.get("/forms/valid")
def list_valid_forms(association_type: Optional[str] = None, professor: Optional[str] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1), store: Store = Depends(get_store), user=Depends(authenticated)):
    return list_forms(association_type, professor, True, page, limit, store, user)


@app.get("/forms/{form_id}")
def get_form(form_id: str, store: Store = Depends(get_store), user=Depends(authenticated)):
    return form_view(forms.get_form(store, form_id))


@app.put("/forms/{form_id}")
def update_form(form_id: str, payload: FormUpdate, store: Store = Depends(get_store), user=Depends(staff)):
    return form_view(forms.update_form(store, form_id, payload))


@app.delete("/forms/{form_id}")
def delete_form(form_id: str, store: Store = Depends(get_store), user=Depends(staff)):
    forms.delete_form(store, form_id)
    return {"status": "deleted", "id": form_id}


@app.post("/forms/{form_id}/assign")
def assign_form(form_id: str, payload: FormAssignment, store: Store = Depends(get_store), user=Depends(admin_only)):
    return form_view(forms.assign_form(store, form_id, payload.level, payload.target_id))


@app.get("/forms/{form_id}/students")
def form_students(form_id: str, store: Store = Depends(get_store), user=Depends(authenticated)):
    return serialize_list(forms.form_target_students(store, forms.get_form(store, form_id)))


@app.get("/forms/{form_id}/criteria")
def form_criteria(form_id: str, store: Store = Depends(get_store), user=Depends(authenticated)):
    return forms.form_criteria(forms.get_form(store, form_id))


@app.get("/forms/{form_id}/template")
def form_template(form_id: str, store: Store = Depends(get_store), user=Depends(authenticated)):
    return {"max_scores": forms.export_template(forms.get_form(store, form_id))}


# -------------------- Evaluations -------------------- #

@app.post("/evaluations", status_code=201)
def add_evaluation(payload: Evaluation, store: Store = Depends(get_store), user=Depends(staff)):
    if not payload.professor:
        payload = payload.model_copy(update={"professor": user.get("sub")})
    return serialize_doc(evaluations.create_evaluation(store, payload))


@app.post("/evaluations/bulk", status_code=201)
def bulk_add_evaluations(payload: BulkEvaluationRequest, store: Store = Depends(get_store), user=Depends(staff)):
    if not payload.professor:
        payload = payload.model_copy(update={"professor": user.get("sub")})
    result = evaluations.bulk_create(store, payload)
    return {
        "message": f"{len(result['created'])} evaluations created",
        "created": serialize_list(result["created"]),
        "errors": result["errors"],
    }


@app.post("/evaluations/validate-scores")
def validate_scores(payload: ScoreCheck, store: Store = Depends(get_store), user=Depends(authenticated)):
    return evaluations.validate_scores(store, payload)


@app.get("/evaluations")
def list_evaluations(form: Optional[str] = None, professor: Optional[str] = None, student: Optional[str] = None, group: Optional[str] = None, promotion: Optional[str] = None, subgroup: Optional[str] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1), store: Store = Depends(get_store), user=Depends(authenticated)):
    result = evaluations.find_evaluations(
        store, page, limit,
        form=form, professor=professor, student=student,
        group=group, promotion=promotion, subgroup=subgroup,
    )
    return page_of(result)


@app.get("/evaluations/stats/{form_id}")
def evaluation_stats(form_id: str, store: Store = Depends(get_store), user=Depends(authenticated)):
    return evaluations.compute_line_statistics(store, form_id)


@app.get("/evaluations/export/{form_id}")
def export_evaluations(form_id: str, store: Store = Depends(get_store), user=Depends(authenticated)):
    content = evaluations.export_csv(store, form_id)
    return StreamingResponse(
        iter([content]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="form-{form_id}-evaluations.csv"'},
    )


@app.get("/evaluations/context/{form_id}")
def evaluation_context(form_id: str, store: Store = Depends(get_store), user=Depends(authenticated)):
    context = evaluations.evaluation_context(store, form_id)
    form: Dict[str, Any] = {**context["form"], "targets": serialize_list(context["form"]["targets"])}
    return {
        "form": form,
        "roster": serialize_list(context["roster"]),
        "existing_evaluations": serialize_list(context["existing_evaluations"]),
        "stats": context["stats"],
    }


@app.get("/evaluations/{evaluation_id}")
def get_evaluation(evaluation_id: str, store: Store = Depends(get_store), user=Depends(authenticated)):
    return serialize_doc(evaluations.get_evaluation(store, evaluation_id))


@app.put("/evaluations/{evaluation_id}")
def update_evaluation(evaluation_id: str, payload: EvaluationUpdate, store: Store = Depends(get_store), user=Depends(staff)):
    return serialize_doc(evaluations.update_evaluation(store, evaluation_id, payload))


@app.delete("/evaluations/{evaluation_id}")
def delete_evaluation(evaluation_id: str, store: Store = Depends(get_store), user=Depends(admin_only)):
    evaluations.delete_evaluation(store, evaluation_id)
    return {"status": "deleted", "id": evaluation_id}


# -------------------- Statistics -------------------- #

@app.get("/stats/overview")
def stats_overview(store: Store = Depends(get_store), user=Depends(staff)):
    return evaluations.overview(store)


@app.get("/stats/students")
def stats_students(store: Store = Depends(get_store), user=Depends(staff)):
    return evaluations.student_statistics(store)


@app.get("/stats/forms")
def stats_forms(store: Store = Depends(get_store), user=Depends(staff)):
    return evaluations.form_statistics(store)


@app.get("/stats/evaluations")
def stats_evaluations(store: Store = Depends(get_store), user=Depends(staff)):
    return evaluations.evaluation_statistics(store)


@app.get("/stats/promotions/{promotion_id}")
def stats_promotion(promotion_id: str, store: Store = Depends(get_store), user=Depends(staff)):
    return evaluations.promotion_statistics(store, promotion_id)


# -------------------- Run -------------------- #

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
