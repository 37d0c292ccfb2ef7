"""
Admin functions: account provisioning, batches, subjects, submission
windows and cascading deletes. Every mutation writes one audit row.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List

from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from audit import record_audit
from database import (
    APPLICATIONS,
    APPLICATION_SUBJECT_FACULTY,
    BATCHES,
    BATCH_SUBMISSION_SETTINGS,
    GLOBAL_SUBMISSION_SETTINGS,
    NOTIFICATIONS,
    PROFILES,
    STAFF_PROFILES,
    SUBJECTS,
    USER_ROLES,
    USERS,
    create_document,
    find_by_id,
    parse_object_id,
)
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from schemas import (
    AdminRegistration,
    Batch,
    BatchCreate,
    FacultyCreate,
    Profile,
    StaffCreate,
    StaffProfile,
    StudentRecord,
    Subject,
    SubmissionWindow,
)
from security import assign_role, get_password_hash

logger = logging.getLogger(__name__)


# ---------- Identities ----------
def create_identity(db: Database, email: str, password: str, name: str,
                    password_change_required: bool = True) -> ObjectId:
    email = email.lower()
    if db[USERS].find_one({"email": email}, {"_id": 1}):
        raise ConflictError(f"A user with email {email} already exists")
    try:
        result = db[USERS].insert_one({
            "email": email,
            "password_hash": get_password_hash(password),
            "name": name,
            "password_change_required": password_change_required,
            "created_at": datetime.utcnow(),
        })
    except DuplicateKeyError:
        raise ConflictError(f"A user with email {email} already exists")
    return result.inserted_id


def _delete_identity(db: Database, user_id: str) -> None:
    db[USER_ROLES].delete_many({"user_id": user_id})
    db[NOTIFICATIONS].delete_many({"user_id": user_id})
    db[USERS].delete_one({"_id": ObjectId(user_id)})


def register_admin(db: Database, payload: AdminRegistration) -> str:
    """Bootstrap an admin account guarded by the server-side registration code"""
    if not config.ADMIN_REGISTRATION_CODE or payload.admin_code != config.ADMIN_REGISTRATION_CODE:
        raise AuthorizationError("Invalid admin code")

    user_id = create_identity(db, payload.email, payload.password, payload.name, password_change_required=False)
    db[STAFF_PROFILES].insert_one({
        "_id": user_id,
        **StaffProfile(name=payload.name, email=payload.email, designation="Administrator").model_dump(),
        "created_at": datetime.utcnow(),
    })
    assign_role(db, str(user_id), "admin")
    record_audit(db, str(user_id), "register_admin", STAFF_PROFILES, str(user_id), {"email": payload.email})
    return str(user_id)


def _create_staff_account(db: Database, actor_id: str, data: Dict[str, Any], role: str, action: str) -> Dict[str, Any]:
    # Staff sign in with their employee id until they change it
    user_id = create_identity(db, data["email"], data["employee_id"], data["name"])
    profile = StaffProfile(**data).model_dump()
    if not profile.get("date_of_joining"):
        profile["date_of_joining"] = date.today().isoformat()
    db[STAFF_PROFILES].insert_one({"_id": user_id, **profile, "created_at": datetime.utcnow()})
    assign_role(db, str(user_id), role)

    record_audit(db, actor_id, action, STAFF_PROFILES, str(user_id), {
        "role": role,
        "department": profile.get("department"),
        "designation": profile.get("designation"),
    })
    logger.info(f"Created {role} account {user_id} ({data['email']})")
    return {"user_id": str(user_id), "employee_id": data["employee_id"], "login_id": data["email"].lower()}


def create_faculty(db: Database, actor_id: str, payload: FacultyCreate) -> Dict[str, Any]:
    data = payload.model_dump(exclude={"role"})
    return _create_staff_account(db, actor_id, data, payload.role, "create_faculty")


def create_staff(db: Database, actor_id: str, payload: StaffCreate) -> Dict[str, Any]:
    data = payload.model_dump(exclude={"role"})
    return _create_staff_account(db, actor_id, data, payload.role, "create_staff")


def create_students(db: Database, actor_id: str, students: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Bulk student creation. All records are validated first; if any fail
    nothing is created. Otherwise each record succeeds or fails on its own.
    """
    if not students:
        raise ValidationError("No students provided")

    validated: List[StudentRecord] = []
    errors: List[Dict[str, str]] = []
    for raw in students:
        try:
            validated.append(StudentRecord.model_validate(raw))
        except PydanticValidationError as e:
            errors.append({
                "usn": str(raw.get("usn") or "unknown"),
                "message": ", ".join(err["msg"] for err in e.errors()),
            })
    if errors:
        raise ValidationError("Validation failed", details={"success": [], "errors": errors})

    results: Dict[str, List] = {"success": [], "errors": []}
    for student in validated:
        if db[PROFILES].find_one({"usn": student.usn}, {"_id": 1}):
            results["errors"].append({"usn": student.usn, "message": f"USN {student.usn} already exists"})
            continue
        email = f"{student.usn.lower()}@temp.edu"
        try:
            user_id = create_identity(db, email, student.usn, student.name)
        except ConflictError as e:
            results["errors"].append({"usn": student.usn, "message": e.message})
            continue
        profile = Profile(
            name=student.name,
            email=email,
            usn=student.usn,
            department=student.department,
            batch=student.batch,
            semester=1,
            profile_completed=False,
        ).model_dump()
        db[PROFILES].insert_one({"_id": user_id, **profile, "created_at": datetime.utcnow()})
        assign_role(db, str(user_id), "student")
        results["success"].append(student.usn)

    record_audit(db, actor_id, "create_students", PROFILES, None, {
        "created": len(results["success"]),
        "failed": len(results["errors"]),
    })
    return results


# ---------- Batches & subjects ----------
def create_batch(db: Database, actor_id: str, payload: BatchCreate) -> str:
    if payload.end_year <= payload.start_year:
        raise ValidationError("End year must be after start year")
    name = f"{payload.start_year}-{payload.end_year % 100:02d}"
    if db[BATCHES].find_one({"name": name}, {"_id": 1}):
        raise ConflictError(f"Batch {name} already exists")
    try:
        batch_id = create_document(db, BATCHES, Batch(
            name=name,
            start_year=payload.start_year,
            end_year=payload.end_year,
            current_semester=payload.current_semester,
        ))
    except DuplicateKeyError:
        raise ConflictError(f"Batch {name} already exists")
    record_audit(db, actor_id, "create_batch", BATCHES, batch_id, {"name": name})
    return batch_id


def update_batch_semester(db: Database, actor_id: str, batch_id: str, semester: int) -> Dict[str, Any]:
    batch = find_by_id(db, BATCHES, batch_id, "batch id")
    if not batch:
        raise NotFoundError("Batch not found")
    db[BATCHES].update_one({"_id": batch["_id"]}, {"$set": {"current_semester": semester, "updated_at": datetime.utcnow()}})
    res = db[PROFILES].update_many({"batch": batch["name"]}, {"$set": {"semester": semester}})
    record_audit(db, actor_id, "update_semester", BATCHES, batch_id, {
        "batch": batch["name"],
        "semester": semester,
        "students_updated": res.modified_count,
    })
    return {"batch": batch["name"], "current_semester": semester, "students_updated": res.modified_count}


def create_subject(db: Database, actor_id: str, payload: Subject) -> str:
    if db[SUBJECTS].find_one({"code": payload.code, "department": payload.department}, {"_id": 1}):
        raise ConflictError(f"Subject {payload.code} already exists for {payload.department}")
    subject_id = create_document(db, SUBJECTS, payload)
    record_audit(db, actor_id, "create_subject", SUBJECTS, subject_id, {"code": payload.code})
    return subject_id


# ---------- Submission windows ----------
def set_global_window(db: Database, actor_id: str, window: SubmissionWindow) -> dict:
    doc = {**window.model_dump(), "updated_by": actor_id, "updated_at": datetime.utcnow()}
    db[GLOBAL_SUBMISSION_SETTINGS].update_one({}, {"$set": doc}, upsert=True)
    record_audit(db, actor_id, "update_global_submission_settings", GLOBAL_SUBMISSION_SETTINGS, None,
                 {"enabled": window.enabled})
    return db[GLOBAL_SUBMISSION_SETTINGS].find_one({})


def set_batch_window(db: Database, actor_id: str, batch_name: str, window: SubmissionWindow) -> dict:
    if not db[BATCHES].find_one({"name": batch_name}, {"_id": 1}):
        raise NotFoundError("Batch not found")
    doc = {**window.model_dump(), "batch_name": batch_name, "updated_by": actor_id, "updated_at": datetime.utcnow()}
    db[BATCH_SUBMISSION_SETTINGS].update_one({"batch_name": batch_name}, {"$set": doc}, upsert=True)
    record_audit(db, actor_id, "update_batch_submission_settings", BATCH_SUBMISSION_SETTINGS, batch_name,
                 {"enabled": window.enabled})
    return db[BATCH_SUBMISSION_SETTINGS].find_one({"batch_name": batch_name})


def clear_batch_window(db: Database, actor_id: str, batch_name: str) -> bool:
    res = db[BATCH_SUBMISSION_SETTINGS].delete_one({"batch_name": batch_name})
    if res.deleted_count:
        record_audit(db, actor_id, "clear_batch_submission_settings", BATCH_SUBMISSION_SETTINGS, batch_name)
    return bool(res.deleted_count)


# ---------- Deletes ----------
def _delete_applications(db: Database, filt: dict) -> Dict[str, int]:
    app_ids = [str(a["_id"]) for a in db[APPLICATIONS].find(filt, {"_id": 1})]
    if not app_ids:
        return {"applications": 0, "faculty_assignments": 0, "notifications": 0}
    rows = db[APPLICATION_SUBJECT_FACULTY].delete_many({"application_id": {"$in": app_ids}})
    notes = db[NOTIFICATIONS].delete_many({
        "related_entity_type": "application",
        "related_entity_id": {"$in": app_ids},
    })
    apps = db[APPLICATIONS].delete_many({"_id": {"$in": [ObjectId(a) for a in app_ids]}})
    return {
        "applications": apps.deleted_count,
        "faculty_assignments": rows.deleted_count,
        "notifications": notes.deleted_count,
    }


def delete_application(db: Database, actor_id: str, application_id: str) -> Dict[str, int]:
    app = find_by_id(db, APPLICATIONS, application_id, "application id")
    if not app:
        raise NotFoundError("Application not found")
    deleted = _delete_applications(db, {"_id": app["_id"]})
    record_audit(db, actor_id, "DELETE_APPLICATION", APPLICATIONS, application_id, {
        "student_id": app["student_id"],
        "batch": app["batch"],
        "department": app["department"],
        "semester": app["semester"],
        **deleted,
    })
    return deleted


def delete_faculty(db: Database, actor_id: str, faculty_id: str) -> Dict[str, Any]:
    oid = parse_object_id(faculty_id, "faculty id")
    staff = db[STAFF_PROFILES].find_one({"_id": oid})
    if not staff:
        raise NotFoundError("Faculty not found")
    if not db[USER_ROLES].find_one({"user_id": faculty_id, "role": {"$in": ["faculty", "hod"]}}):
        raise ValidationError("User is not a faculty member")

    # Assignment rows only go away with their application; they stay as history here
    application_ids = db[APPLICATION_SUBJECT_FACULTY].distinct("application_id", {"faculty_id": faculty_id})
    open_reviews = db[APPLICATIONS].count_documents({
        "_id": {"$in": [ObjectId(a) for a in application_ids]},
        "faculty_verified": False,
    })
    if open_reviews:
        raise ConflictError(
            f"Faculty still has subject verifications on {open_reviews} application(s) awaiting faculty review"
        )

    kept = db[APPLICATION_SUBJECT_FACULTY].count_documents({"faculty_id": faculty_id})
    _delete_identity(db, faculty_id)
    db[STAFF_PROFILES].delete_one({"_id": oid})

    record_audit(db, actor_id, "DELETE", STAFF_PROFILES, faculty_id, {
        "name": staff.get("name"),
        "employee_id": staff.get("employee_id"),
        "department": staff.get("department"),
        "faculty_assignments_kept": kept,
    })
    return {"faculty_assignments_kept": kept}


def delete_student(db: Database, actor_id: str, student_id: str) -> Dict[str, Any]:
    oid = parse_object_id(student_id, "student id")
    profile = db[PROFILES].find_one({"_id": oid})
    if not profile:
        raise NotFoundError("Student not found")
    deleted = _delete_applications(db, {"student_id": student_id})
    _delete_identity(db, student_id)
    db[PROFILES].delete_one({"_id": oid})
    record_audit(db, actor_id, "delete_student", PROFILES, student_id, {"usn": profile.get("usn"), **deleted})
    return deleted


def delete_batch(db: Database, actor_id: str, batch_id: str) -> Dict[str, Any]:
    batch = find_by_id(db, BATCHES, batch_id, "batch id")
    if not batch:
        raise NotFoundError("Batch not found")

    student_ids = [str(p["_id"]) for p in db[PROFILES].find({"batch": batch["name"]}, {"_id": 1})]
    deleted = _delete_applications(db, {"$or": [
        {"batch": batch["name"]},
        {"student_id": {"$in": student_ids}},
    ]})
    for student_id in student_ids:
        _delete_identity(db, student_id)
    db[PROFILES].delete_many({"batch": batch["name"]})
    db[BATCH_SUBMISSION_SETTINGS].delete_many({"batch_name": batch["name"]})
    db[BATCHES].delete_one({"_id": batch["_id"]})

    summary = {"students": len(student_ids), **deleted}
    record_audit(db, actor_id, "delete_batch", BATCHES, batch_id, {"batch_name": batch["name"], **summary})
    logger.info(f"Batch {batch['name']} deleted: {summary}")
    return {"batch_name": batch["name"], "deleted": summary}
