"""
Submission gate: validates a student's no-due request and creates the
application together with its subject/faculty rows.

The two inserts are not one transaction. If the rows cannot be written the
freshly created application is deleted again, so a failed attempt never
leaves an application behind.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from audit import record_audit
from database import (
    APPLICATIONS,
    APPLICATION_SUBJECT_FACULTY,
    BATCH_SUBMISSION_SETTINGS,
    GLOBAL_SUBMISSION_SETTINGS,
    PROFILES,
    STAFF_PROFILES,
    SUBJECTS,
    create_document,
    is_object_id,
)
from errors import (
    ConflictError,
    NotFoundError,
    SubmissionClosedError,
    ValidationError,
    WorkflowError,
)
from notifications import notify_role, notify_user
from schemas import (
    ADVISOR_DESIGNATIONS,
    BATCH_PATTERN,
    DEPARTMENTS,
    Application,
    ApplicationSubjectFaculty,
    SubmitApplicationRequest,
)
from workflow import derived_fields

logger = logging.getLogger(__name__)

WINDOW_OPEN_MESSAGE = "Submissions are open"


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def resolve_submission_window(batch_setting: Optional[dict], global_setting: Optional[dict],
                              now: datetime) -> Tuple[bool, str]:
    """
    Layered lookup: a batch override wins, otherwise the global setting,
    otherwise submissions are open. Returns (allowed, message).
    """
    settings = batch_setting or global_setting
    if not settings:
        return True, WINDOW_OPEN_MESSAGE

    if not settings.get("enabled", True):
        return False, "Submissions are currently disabled by administration"

    now = _naive_utc(now)
    start = _naive_utc(settings.get("scheduled_start"))
    if start and now < start:
        return False, f"Submissions will open on {start:%Y-%m-%d %H:%M} UTC"

    end = _naive_utc(settings.get("scheduled_end"))
    if end and now > end:
        return False, "Submission window has closed"

    return True, WINDOW_OPEN_MESSAGE


def get_window_status(db: Database, batch_name: Optional[str], now: Optional[datetime] = None) -> Tuple[bool, str]:
    batch_setting = db[BATCH_SUBMISSION_SETTINGS].find_one({"batch_name": batch_name}) if batch_name else None
    global_setting = db[GLOBAL_SUBMISSION_SETTINGS].find_one({})
    return resolve_submission_window(batch_setting, global_setting, now or datetime.utcnow())


def _check_advisor(db: Database, staff_id: str, label: str) -> dict:
    staff = db[STAFF_PROFILES].find_one({"_id": ObjectId(staff_id), "is_active": True})
    if not staff:
        raise ValidationError(f"Selected {label.lower()} is invalid or inactive")
    if staff.get("designation") not in ADVISOR_DESIGNATIONS:
        raise ValidationError(f"{label} must be HOD, Assistant Professor, or Associate Professor")
    return staff


def validate_submission(db: Database, student_id: str, request: SubmitApplicationRequest,
                        now: Optional[datetime] = None) -> dict:
    """Run every gate check in order; returns the student's profile"""
    profile = db[PROFILES].find_one({"_id": ObjectId(student_id)})
    if not profile:
        raise NotFoundError("Profile not found")
    if not profile.get("profile_completed"):
        raise ValidationError("Profile must be completed before submitting application")

    allowed, message = get_window_status(db, profile.get("batch"), now)
    if not allowed:
        logger.info(f"Submission blocked for batch {profile.get('batch')}: {message}")
        raise SubmissionClosedError(
            f"Submissions are currently not allowed for your batch. {message}."
        )

    if request.department not in DEPARTMENTS:
        raise ValidationError(f"Invalid department. Must be one of: {', '.join(DEPARTMENTS)}")
    if not 1 <= request.semester <= 8:
        raise ValidationError("Invalid semester. Must be between 1 and 8")
    if not re.match(BATCH_PATTERN, request.batch or ""):
        raise ValidationError("Invalid batch format. Must be in format YYYY-YY (e.g., 2023-27)")
    if not request.subjects:
        raise ValidationError("At least one subject must be provided")
    for pair in request.subjects:
        if not is_object_id(pair.subject_id) or not is_object_id(pair.faculty_id):
            raise ValidationError("Invalid subject or faculty ID format")
    subject_ids = [pair.subject_id for pair in request.subjects]
    if len(set(subject_ids)) != len(subject_ids):
        raise ValidationError("Each subject can only be selected once")
    if not is_object_id(request.counsellor_id):
        raise ValidationError("Valid Student Counsellor must be selected")
    if not is_object_id(request.class_advisor_id):
        raise ValidationError("Valid Class Advisor must be selected")

    existing = db[APPLICATIONS].find_one(
        {"student_id": student_id, "semester": request.semester, "batch": request.batch}, {"_id": 1}
    )
    if existing:
        raise ConflictError("You have already submitted an application for this semester and batch")

    _check_advisor(db, request.counsellor_id, "Counsellor")
    _check_advisor(db, request.class_advisor_id, "Class advisor")

    found_subjects = db[SUBJECTS].count_documents({"_id": {"$in": [ObjectId(s) for s in subject_ids]}})
    if found_subjects != len(subject_ids):
        raise ValidationError("One or more subjects are invalid")

    faculty_ids = list(dict.fromkeys(pair.faculty_id for pair in request.subjects))
    found_faculty = db[STAFF_PROFILES].count_documents(
        {"_id": {"$in": [ObjectId(f) for f in faculty_ids]}, "is_active": True}
    )
    if found_faculty != len(faculty_ids):
        raise ValidationError("One or more faculty members are invalid or inactive")

    return profile


def insert_assignments(db: Database, application_id: str, request: SubmitApplicationRequest) -> List[str]:
    rows = []
    now = datetime.utcnow()
    for pair in request.subjects:
        row = ApplicationSubjectFaculty(
            application_id=application_id,
            subject_id=pair.subject_id,
            faculty_id=pair.faculty_id,
        ).model_dump()
        row["created_at"] = now
        row["updated_at"] = now
        rows.append(row)
    result = db[APPLICATION_SUBJECT_FACULTY].insert_many(rows)
    return [str(i) for i in result.inserted_ids]


def submit_application(db: Database, student_id: str, request: SubmitApplicationRequest,
                       now: Optional[datetime] = None) -> Dict[str, Any]:
    profile = validate_submission(db, student_id, request, now)

    doc = Application(
        student_id=student_id,
        department=request.department,
        semester=request.semester,
        batch=request.batch,
        student_type=profile.get("student_type") or "local",
        counsellor_id=request.counsellor_id,
        class_advisor_id=request.class_advisor_id,
    ).model_dump()
    doc.update(derived_fields(doc))

    try:
        application_id = create_document(db, APPLICATIONS, doc)
    except DuplicateKeyError:
        raise ConflictError("You have already submitted an application for this semester and batch")
    logger.info(f"Application {application_id} created for student {student_id}")

    try:
        insert_assignments(db, application_id, request)
    except PyMongoError as e:
        logger.error(f"Subject-faculty mapping failed for {application_id}, rolling back: {e}")
        db[APPLICATIONS].delete_one({"_id": ObjectId(application_id)})
        db[APPLICATION_SUBJECT_FACULTY].delete_many({"application_id": application_id})
        raise WorkflowError(f"Failed to create subject-faculty mappings: {e}")

    record_audit(db, student_id, "CREATE_APPLICATION", APPLICATIONS, application_id, {
        "department": request.department,
        "semester": request.semester,
        "subject_count": len(request.subjects),
    })

    _notify_submission(db, profile, request, application_id)
    return db[APPLICATIONS].find_one({"_id": ObjectId(application_id)})


def _notify_submission(db: Database, profile: dict, request: SubmitApplicationRequest,
                       application_id: str) -> None:
    notify_role(
        db, "library",
        "New No Due Application",
        f"A new no due application has been submitted for {request.department} - Semester {request.semester}",
        application_id=application_id,
    )

    who = f"{profile.get('name')} ({profile.get('usn')}) from {profile.get('department')}"
    notify_user(
        db, request.counsellor_id, "New Student Assignment",
        f"{who} has selected you as their Student Counsellor. The application is currently in the "
        f"early verification stages. You will be notified when it's ready for your review.",
        audience_role="counsellor", application_id=application_id,
    )
    notify_user(
        db, request.class_advisor_id, "New Student Assignment",
        f"{who} has selected you as their Class Advisor. The application is currently in the "
        f"early verification stages. You will be notified when it's ready for your review.",
        audience_role="class_advisor", application_id=application_id,
    )
