import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import PyMongoError

import config
import database
from database import (
    APPLICATIONS,
    APPLICATION_SUBJECT_FACULTY,
    AUDIT_LOGS,
    BATCHES,
    PROFILES,
    STAFF_PROFILES,
    SUBJECTS,
    USER_ROLES,
    ensure_indexes,
    get_db,
    get_documents,
    parse_object_id,
)
from errors import AuthorizationError, ConflictError, NoDueError, NotFoundError
from logging_config import generate_request_id, set_request_id, set_user_id, setup_logging
from schemas import (
    ADVISOR_DESIGNATIONS,
    AdminRegistration,
    BatchCreate,
    FacultyCreate,
    LoginRequest,
    PaymentSubmission,
    ProfileUpdate,
    SemesterUpdate,
    StaffCreate,
    StudentsCreate,
    Subject,
    SubmissionWindow,
    SubmitApplicationRequest,
    VerificationDecision,
)
from security import authenticate, create_access_token, get_current_user, require_role
import certificate
import faculty_review
import notifications
import provisioning
import submission
import workflow

setup_logging()
logger = logging.getLogger("nodue")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            ensure_indexes(database.db)
        except PyMongoError as e:
            logger.warning(f"Could not ensure indexes: {e}")
    yield


app = FastAPI(title="No-Due Certificate Workflow API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or generate_request_id()
    set_request_id(request_id)
    set_user_id("")
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started) * 1000
    if request.url.path != "/":
        logger.info(f"HTTP {request.method} {request.url.path} - {response.status_code} ({duration_ms:.2f}ms)")
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(NoDueError)
async def nodue_error_handler(request: Request, exc: NoDueError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error(f"Database error on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Database operation failed, please try again"})


@app.get("/")
def read_root():
    return {"message": "No-Due Certificate Backend Running"}


# ---------- Helpers ----------
class IdModel(BaseModel):
    id: str


def to_public(doc):
    if not doc:
        return doc
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    doc.pop("password_hash", None)
    return doc


STAFF_ROLES = {"admin", "faculty", "library", "hostel", "college_office", "hod",
               "lab_instructor", "counsellor", "class_advisor"}


def ensure_can_view(app_doc: dict, user: Dict[str, Any]) -> None:
    if app_doc.get("student_id") == user["id"]:
        return
    if STAFF_ROLES.intersection(user["roles"]):
        return
    raise AuthorizationError("You cannot view this application")


# ---------- Auth ----------
@app.post("/auth/login", response_model=dict)
async def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user_id = authenticate(db, payload.email, payload.password)
    return {"access_token": create_access_token(user_id), "token_type": "bearer", "user_id": user_id}


@app.post("/auth/register-admin", response_model=IdModel)
async def register_admin(payload: AdminRegistration, db: Database = Depends(get_db)):
    return {"id": provisioning.register_admin(db, payload)}


@app.get("/auth/me", response_model=dict)
async def me(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    oid = ObjectId(user["id"])
    profile = db[PROFILES].find_one({"_id": oid})
    staff = db[STAFF_PROFILES].find_one({"_id": oid})
    return {
        **user,
        "profile": to_public(profile),
        "staff_profile": to_public(staff),
    }


# ---------- Student profile ----------
@app.put("/profile", response_model=dict)
async def complete_profile(payload: ProfileUpdate, user: dict = Depends(require_role("student")),
                           db: Database = Depends(get_db)):
    changes = {k: v for k, v in payload.model_dump().items() if v is not None}
    changes["profile_completed"] = True
    res = db[PROFILES].update_one({"_id": ObjectId(user["id"])}, {"$set": changes})
    if res.matched_count == 0:
        raise NotFoundError("Profile not found")
    return to_public(db[PROFILES].find_one({"_id": ObjectId(user["id"])}))


# ---------- Reference data ----------
@app.get("/subjects", response_model=List[dict])
async def list_subjects(department: Optional[str] = None, semester: Optional[int] = None,
                        user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    filt: Dict[str, Any] = {}
    if department:
        filt["department"] = department
    if semester:
        filt["semester"] = semester
    docs = get_documents(db, SUBJECTS, filt, sort=[("code", 1)])
    return [to_public(d) for d in docs]


@app.get("/staff/advisors", response_model=List[dict])
async def list_advisors(department: Optional[str] = None, user: dict = Depends(get_current_user),
                        db: Database = Depends(get_db)):
    """Active staff eligible to act as counsellor or class advisor"""
    filt: Dict[str, Any] = {"is_active": True, "designation": {"$in": list(ADVISOR_DESIGNATIONS)}}
    if department:
        filt["department"] = department
    docs = get_documents(db, STAFF_PROFILES, filt, sort=[("name", 1)])
    return [{"id": str(d["_id"]), "name": d["name"], "designation": d.get("designation"),
             "department": d.get("department")} for d in docs]


@app.get("/staff/faculty", response_model=List[dict])
async def list_faculty(department: Optional[str] = None, user: dict = Depends(get_current_user),
                       db: Database = Depends(get_db)):
    teaching_ids = {r["user_id"] for r in db[USER_ROLES].find({"role": {"$in": ["faculty", "hod"]}})}
    filt: Dict[str, Any] = {"is_active": True, "_id": {"$in": [ObjectId(t) for t in teaching_ids]}}
    if department:
        filt["department"] = department
    docs = get_documents(db, STAFF_PROFILES, filt, sort=[("name", 1)])
    return [{"id": str(d["_id"]), "name": d["name"], "designation": d.get("designation"),
             "department": d.get("department")} for d in docs]


@app.get("/submission-window", response_model=dict)
async def submission_window(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    profile = db[PROFILES].find_one({"_id": ObjectId(user["id"])}) or {}
    allowed, message = submission.get_window_status(db, profile.get("batch"))
    return {"batch": profile.get("batch"), "allowed": allowed, "message": message}


# ---------- Applications ----------
@app.post("/applications", response_model=dict)
async def submit_application(payload: SubmitApplicationRequest, user: dict = Depends(require_role("student")),
                             db: Database = Depends(get_db)):
    doc = submission.submit_application(db, user["id"], payload)
    return {"success": True, "application_id": str(doc["_id"]), "status": doc["status"],
            "message": "Application submitted successfully"}


@app.get("/applications/mine", response_model=List[dict])
async def my_applications(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    docs = get_documents(db, APPLICATIONS, {"student_id": user["id"]}, sort=[("created_at", -1)])
    return [to_public(d) for d in docs]


@app.get("/applications/{app_id}", response_model=dict)
async def get_application(app_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    doc = workflow.load_application(db, app_id)
    ensure_can_view(doc, user)
    rows = get_documents(db, APPLICATION_SUBJECT_FACULTY, {"application_id": app_id})
    public = to_public(doc)
    public["faculty_assignments"] = [to_public(r) for r in rows]
    return public


@app.post("/applications/{app_id}/verify/{stage}", response_model=dict)
async def verify_stage(app_id: str, stage: str, decision: VerificationDecision,
                       user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    if stage not in workflow.REVIEW_STAGES:
        raise HTTPException(status_code=404, detail=f"Unknown verification stage: {stage}")
    doc = workflow.verify_stage(db, app_id, stage, user, decision.approved, decision.comment)
    return to_public(doc)


@app.post("/applications/{app_id}/faculty-review", response_model=dict)
async def faculty_review_action(app_id: str, decision: VerificationDecision,
                                user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    if not {"faculty", "hod"}.intersection(user["roles"]):
        raise AuthorizationError("Forbidden: faculty access required")
    result = faculty_review.review_assignments(db, app_id, user["id"], decision.approved, decision.comment)
    return {"outcome": result["outcome"], "application": to_public(result["application"])}


@app.post("/applications/{app_id}/payment", response_model=dict)
async def submit_payment(app_id: str, payload: PaymentSubmission, user: dict = Depends(require_role("student")),
                         db: Database = Depends(get_db)):
    doc = workflow.submit_payment(db, app_id, user["id"], payload.transaction_id)
    return to_public(doc)


@app.post("/applications/{app_id}/lab-verification", response_model=dict)
async def lab_verification(app_id: str, decision: VerificationDecision,
                           user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    doc = workflow.finalize_lab(db, app_id, user, decision.approved, decision.comment)
    return to_public(doc)


@app.get("/applications/{app_id}/certificate", response_class=HTMLResponse)
async def get_certificate(app_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    doc = workflow.load_application(db, app_id)
    ensure_can_view(doc, user)
    if doc.get("status") != "completed":
        raise ConflictError("Certificate is available only after all clearances are complete")
    profile = workflow.student_profile(db, doc)
    return HTMLResponse(certificate.render_certificate(doc, profile))


# ---------- Role queues ----------
@app.get("/queues/faculty", response_model=List[dict])
async def faculty_queue(include_done: bool = False, user: dict = Depends(get_current_user),
                        db: Database = Depends(get_db)):
    docs = faculty_review.list_assigned(db, user["id"], include_done=include_done)
    return [to_public(d) for d in docs]


@app.get("/queues/{stage}", response_model=List[dict])
async def stage_queue(stage: str, include_rejected: bool = False, user: dict = Depends(get_current_user),
                      db: Database = Depends(get_db)):
    if stage not in workflow.REVIEW_STAGES and stage != "lab":
        raise HTTPException(status_code=404, detail=f"Unknown verification stage: {stage}")
    docs = workflow.list_queue(db, stage, user, include_rejected=include_rejected)
    return [to_public(d) for d in docs]


# ---------- Notifications ----------
@app.get("/notifications", response_model=List[dict])
async def list_notifications(unread_only: bool = False, user: dict = Depends(get_current_user),
                             db: Database = Depends(get_db)):
    docs = notifications.list_notifications(db, user["id"], unread_only)
    return [to_public(d) for d in docs]


@app.patch("/notifications/{notification_id}", response_model=dict)
async def mark_notification_read(notification_id: str, user: dict = Depends(get_current_user),
                                 db: Database = Depends(get_db)):
    _id = parse_object_id(notification_id, "notification id")
    return to_public(notifications.mark_read(db, user["id"], _id))


@app.post("/notifications/read-all", response_model=dict)
async def mark_all_notifications_read(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"updated": notifications.mark_all_read(db, user["id"])}


# ---------- Admin ----------
@app.post("/admin/faculty", response_model=dict, status_code=201)
async def create_faculty(payload: FacultyCreate, admin: dict = Depends(require_role("admin")),
                         db: Database = Depends(get_db)):
    return {"success": True, **provisioning.create_faculty(db, admin["id"], payload)}


@app.post("/admin/staff", response_model=dict, status_code=201)
async def create_staff(payload: StaffCreate, admin: dict = Depends(require_role("admin")),
                       db: Database = Depends(get_db)):
    return {"success": True, **provisioning.create_staff(db, admin["id"], payload)}


@app.post("/admin/students", response_model=dict)
async def create_students(payload: StudentsCreate, admin: dict = Depends(require_role("admin")),
                          db: Database = Depends(get_db)):
    return provisioning.create_students(db, admin["id"], payload.students)


@app.delete("/admin/faculty/{faculty_id}", response_model=dict)
async def delete_faculty(faculty_id: str, admin: dict = Depends(require_role("admin")),
                         db: Database = Depends(get_db)):
    return {"success": True, "deleted": provisioning.delete_faculty(db, admin["id"], faculty_id)}


@app.delete("/admin/students/{student_id}", response_model=dict)
async def delete_student(student_id: str, admin: dict = Depends(require_role("admin")),
                         db: Database = Depends(get_db)):
    return {"success": True, "deleted": provisioning.delete_student(db, admin["id"], student_id)}


@app.delete("/admin/applications/{app_id}", response_model=dict)
async def delete_application(app_id: str, admin: dict = Depends(require_role("admin")),
                             db: Database = Depends(get_db)):
    return {"success": True, "deleted": provisioning.delete_application(db, admin["id"], app_id)}


@app.get("/admin/batches", response_model=List[dict])
async def list_batches(admin: dict = Depends(require_role("admin")), db: Database = Depends(get_db)):
    return [to_public(d) for d in get_documents(db, BATCHES, sort=[("start_year", -1)])]


@app.post("/admin/batches", response_model=IdModel, status_code=201)
async def create_batch(payload: BatchCreate, admin: dict = Depends(require_role("admin")),
                       db: Database = Depends(get_db)):
    return {"id": provisioning.create_batch(db, admin["id"], payload)}


@app.post("/admin/batches/{batch_id}/semester", response_model=dict)
async def update_batch_semester(batch_id: str, payload: SemesterUpdate, admin: dict = Depends(require_role("admin")),
                                db: Database = Depends(get_db)):
    return provisioning.update_batch_semester(db, admin["id"], batch_id, payload.semester)


@app.delete("/admin/batches/{batch_id}", response_model=dict)
async def delete_batch(batch_id: str, admin: dict = Depends(require_role("admin")),
                       db: Database = Depends(get_db)):
    return {"success": True, **provisioning.delete_batch(db, admin["id"], batch_id)}


@app.post("/admin/subjects", response_model=IdModel, status_code=201)
async def create_subject(payload: Subject, admin: dict = Depends(require_role("admin")),
                         db: Database = Depends(get_db)):
    return {"id": provisioning.create_subject(db, admin["id"], payload)}


@app.put("/admin/submission-settings", response_model=dict)
async def set_global_window(payload: SubmissionWindow, admin: dict = Depends(require_role("admin")),
                            db: Database = Depends(get_db)):
    return to_public(provisioning.set_global_window(db, admin["id"], payload))


@app.put("/admin/submission-settings/{batch_name}", response_model=dict)
async def set_batch_window(batch_name: str, payload: SubmissionWindow, admin: dict = Depends(require_role("admin")),
                           db: Database = Depends(get_db)):
    return to_public(provisioning.set_batch_window(db, admin["id"], batch_name, payload))


@app.delete("/admin/submission-settings/{batch_name}", response_model=dict)
async def clear_batch_window(batch_name: str, admin: dict = Depends(require_role("admin")),
                             db: Database = Depends(get_db)):
    return {"cleared": provisioning.clear_batch_window(db, admin["id"], batch_name)}


@app.get("/admin/audit-logs", response_model=List[dict])
async def list_audit_logs(action: Optional[str] = None, limit: int = Query(100, ge=1, le=1000),
                          admin: dict = Depends(require_role("admin")), db: Database = Depends(get_db)):
    filt = {"action": action} if action else {}
    docs = get_documents(db, AUDIT_LOGS, filt, limit=limit, sort=[("created_at", -1)])
    return [to_public(d) for d in docs]


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
