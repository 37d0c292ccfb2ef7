"""
No-Due approval workflow.

An application passes through nine stages in a fixed order; the hostel
stage applies to hostel students only. Each stage owns one
`<stage>_verified` flag plus a comment and timestamp. `status` and
`current_stage` are never assigned by hand: they are derived from the
flags, `rejected_by` and `transaction_id` on every write, so they cannot
drift from the flags they summarize.

Writes are compare-and-swap on the application's `version` field.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

import config
from database import APPLICATIONS, APPLICATION_SUBJECT_FACULTY, PROFILES, STAFF_PROFILES, parse_object_id
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from notifications import notify_role, notify_user, notify_users

logger = logging.getLogger(__name__)

STAGES = (
    "library", "hostel", "college_office", "faculty", "counsellor",
    "class_advisor", "hod", "payment", "lab",
)

STAGE_LABELS = {
    "library": "Library",
    "hostel": "Hostel",
    "college_office": "College Office",
    "faculty": "Faculty",
    "counsellor": "Counsellor",
    "class_advisor": "Class Advisor",
    "hod": "HOD",
    "payment": "Lab Charge Payment",
    "lab": "Lab",
}

# Stages decided by whoever holds the role
STAGE_ROLES = {
    "library": "library",
    "hostel": "hostel",
    "college_office": "college_office",
    "hod": "hod",
    "lab": "lab_instructor",
}

# Stages handled by verify_stage; faculty and lab have their own operations
REVIEW_STAGES = ("library", "hostel", "college_office", "counsellor", "class_advisor", "hod")

_WAITING_STATUS = {
    "library": "pending",
    "hostel": "hostel_verification_pending",
    "college_office": "college_office_verification_pending",
    "faculty": "college_office_verified",
    "counsellor": "faculty_verified",
    "class_advisor": "counsellor_verified",
    "hod": "class_advisor_verified",
    "lab": "payment_verified",
}

_NEXT_STEP = {
    "hostel": "Your application has been sent to Hostel for verification.",
    "college_office": "Your application has been sent to College Office for verification.",
    "faculty": "Your application has been sent to your subject faculty for verification.",
    "counsellor": "Your application is now with your Student Counsellor.",
    "class_advisor": "Your application is now with your Class Advisor.",
    "hod": "Your application is now with the HOD for final verification.",
    "payment": "You can now proceed to lab charge payment.",
}


# ---------- Derivation ----------
def applicable_stages(student_type: Optional[str]) -> Tuple[str, ...]:
    if student_type == "hostel":
        return STAGES
    return tuple(s for s in STAGES if s != "hostel")


def current_stage(app: Dict[str, Any]) -> Optional[str]:
    """First stage whose flag is not set, None once every stage is verified"""
    for stage in applicable_stages(app.get("student_type")):
        if not app.get(f"{stage}_verified"):
            return stage
    return None


def derive_status(app: Dict[str, Any]) -> str:
    if app.get("rejected_by"):
        return "rejected"
    stage = current_stage(app)
    if stage is None:
        return "completed"
    if stage == "payment":
        return "payment_pending" if app.get("transaction_id") else "hod_verified"
    return _WAITING_STATUS[stage]


def derived_fields(app: Dict[str, Any]) -> Dict[str, Any]:
    return {"status": derive_status(app), "current_stage": current_stage(app)}


# ---------- Persistence ----------
def load_application(db: Database, application_id: str) -> dict:
    app = db[APPLICATIONS].find_one({"_id": parse_object_id(application_id, "application id")})
    if not app:
        raise NotFoundError("Application not found")
    return app


def commit_changes(db: Database, app: dict, changes: Dict[str, Any]) -> Optional[dict]:
    """
    Apply `changes` plus the re-derived status fields if nobody else has
    written the application since `app` was read. Returns the updated
    document, or None when the version check lost the race.
    """
    merged = {**app, **changes}
    update = {**changes, **derived_fields(merged), "updated_at": datetime.utcnow()}
    return db[APPLICATIONS].find_one_and_update(
        {"_id": app["_id"], "version": app.get("version", 0)},
        {"$set": update, "$inc": {"version": 1}},
        return_document=ReturnDocument.AFTER,
    )


def commit_or_conflict(db: Database, app: dict, changes: Dict[str, Any]) -> dict:
    updated = commit_changes(db, app, changes)
    if updated is None:
        raise ConflictError("Application was modified by another reviewer, please reload and retry")
    return updated


def student_profile(db: Database, app: dict) -> dict:
    if not ObjectId.is_valid(app.get("student_id", "")):
        return {}
    return db[PROFILES].find_one({"_id": ObjectId(app["student_id"])}) or {}


def student_summary(app: dict, profile: dict) -> str:
    return (f"{profile.get('name', 'A student')} ({profile.get('usn') or 'N/A'}) "
            f"from {app.get('department')} - Semester {app.get('semester')}")


# ---------- Guards ----------
def check_comment(stage: str, approved: bool, comment: Optional[str]) -> Optional[str]:
    comment = (comment or "").strip() or None
    if not approved and comment is None and config.rejection_comment_required(stage):
        raise ValidationError("Please provide a reason for rejection")
    return comment


def authorize_stage(db: Database, app: dict, stage: str, actor: Dict[str, Any]) -> None:
    if stage == "counsellor":
        if app.get("counsellor_id") != actor["id"]:
            raise AuthorizationError("Only the assigned counsellor can verify this application")
        return
    if stage == "class_advisor":
        if app.get("class_advisor_id") != actor["id"]:
            raise AuthorizationError("Only the assigned class advisor can verify this application")
        return

    role = STAGE_ROLES[stage]
    if role not in actor.get("roles", []):
        raise AuthorizationError(f"Forbidden: {role} access required")
    if stage == "hod":
        staff = db[STAFF_PROFILES].find_one({"_id": ObjectId(actor["id"])}) or {}
        if staff.get("department") != app.get("department"):
            raise AuthorizationError("HOD can only verify applications of their own department")


def is_noop(app: dict, stage: str, approved: bool) -> bool:
    """
    Raise if `stage` cannot act on `app` now. Returns True when the call is
    a repeat approval of an already verified stage, which changes nothing.
    """
    label = STAGE_LABELS[stage]
    if stage not in applicable_stages(app.get("student_type")):
        raise ConflictError(f"{label} verification does not apply to local students")

    rejected_by = app.get("rejected_by")
    if rejected_by:
        if rejected_by != stage:
            raise ConflictError(f"Application was rejected at the {STAGE_LABELS[rejected_by]} stage")
        return False

    if app.get(f"{stage}_verified"):
        if approved:
            return True
        raise ConflictError(f"{label} verification is already complete")

    if current_stage(app) != stage:
        raise ConflictError(f"Application is not awaiting {label} verification")
    return False


# ---------- Notification dispatch ----------
def notify_next_stage(db: Database, app: dict, profile: dict, from_stage: str) -> int:
    """Tell whoever owns the application's new current stage that it is their turn"""
    next_stage = app.get("current_stage")
    app_id = str(app["_id"])
    summary = student_summary(app, profile)
    from_label = STAGE_LABELS[from_stage]

    if next_stage in ("hostel", "college_office"):
        label = STAGE_LABELS[next_stage]
        return notify_role(
            db, next_stage,
            f"New Application for {label} Verification",
            f"{summary} has been approved by {from_label} and requires {label} verification.",
            application_id=app_id,
        )
    if next_stage == "faculty":
        faculty_ids = db[APPLICATION_SUBJECT_FACULTY].distinct("faculty_id", {"application_id": app_id})
        return notify_users(
            db, faculty_ids,
            "Application Ready for Subject Verification",
            f"{summary} has cleared College Office and requires verification of the subjects you teach.",
            audience_role="faculty", application_id=app_id,
        )
    if next_stage == "counsellor":
        return notify_user(
            db, app["counsellor_id"],
            "Application Ready for Counsellor Verification",
            f"{summary} has been verified by all faculty members and is ready for your counsellor verification.",
            audience_role="counsellor", application_id=app_id,
        )
    if next_stage == "class_advisor":
        return notify_user(
            db, app["class_advisor_id"],
            "Application Ready for Class Advisor Verification",
            f"{summary} has been verified by the Student Counsellor and is ready for your verification.",
            audience_role="class_advisor", application_id=app_id,
        )
    if next_stage == "hod":
        return notify_role(
            db, "hod",
            "Application Ready for HOD Verification",
            f"{summary} has been verified by all faculty, counsellor, and class advisor. "
            f"Ready for final HOD verification.",
            application_id=app_id, department=app.get("department"),
        )
    if next_stage == "payment":
        return notify_role(
            db, "lab_instructor",
            "Application Approved by HOD",
            f"{summary} has been approved by HOD. Awaiting lab charge payment verification.",
            application_id=app_id, department=app.get("department"),
        )
    return 0


def _notify_student_decision(db: Database, app: dict, stage: str, approved: bool,
                             comment: Optional[str]) -> None:
    label = STAGE_LABELS[stage]
    if approved:
        message = f"Your {label.lower()} clearance has been approved."
        next_step = _NEXT_STEP.get(app.get("current_stage"))
        if next_step:
            message += f" {next_step}"
        if comment:
            message += f" Note: {comment}"
        notify_user(db, app["student_id"], f"{label} Clearance Approved", message,
                    audience_role="student", type_="approval", application_id=str(app["_id"]))
    else:
        notify_user(db, app["student_id"], f"{label} Clearance Rejected",
                    f"{label} clearance rejected. Reason: {comment or 'Not specified'}. "
                    f"Please contact the {label.lower()} to resolve the issue.",
                    audience_role="student", type_="rejection", application_id=str(app["_id"]))


# ---------- Operations ----------
def verify_stage(db: Database, application_id: str, stage: str, actor: Dict[str, Any],
                 approved: bool, comment: Optional[str] = None) -> dict:
    """Approve or reject one single-owner stage of an application"""
    if stage not in REVIEW_STAGES:
        raise ValidationError(f"Unknown verification stage: {stage}")

    app = load_application(db, application_id)
    authorize_stage(db, app, stage, actor)
    comment = check_comment(stage, approved, comment)
    if is_noop(app, stage, approved):
        logger.info(f"{stage} re-approval of {application_id} ignored, already verified")
        return app

    changes: Dict[str, Any] = {
        f"{stage}_verified": approved,
        f"{stage}_comment": comment,
        f"{stage}_verified_at": datetime.utcnow() if approved else None,
        "rejected_by": None if approved else stage,
    }
    updated = commit_or_conflict(db, app, changes)
    logger.info(f"Application {application_id} {'approved' if approved else 'rejected'} "
                f"at {stage} by {actor['id']}, status={updated['status']}")

    profile = student_profile(db, updated)
    _notify_student_decision(db, updated, stage, approved, comment)
    if approved:
        notify_next_stage(db, updated, profile, stage)
    return updated


def submit_payment(db: Database, application_id: str, student_id: str, transaction_id: str) -> dict:
    """Record the lab charge transaction id; the lab instructor verifies it"""
    app = load_application(db, application_id)
    if app.get("student_id") != student_id:
        raise AuthorizationError("You can only pay for your own application")
    rejected_by = app.get("rejected_by")
    if rejected_by and rejected_by != "lab":
        raise ConflictError(f"Application was rejected at the {STAGE_LABELS[rejected_by]} stage")
    if not app.get("hod_verified"):
        raise ConflictError("Lab charge payment opens after HOD verification")
    if app.get("payment_verified"):
        raise ConflictError("Payment has already been verified")

    transaction_id = transaction_id.strip()
    if not transaction_id:
        raise ValidationError("Transaction id is required")

    # A corrected transaction after a lab rejection goes back to the lab queue
    changes = {"transaction_id": transaction_id}
    if rejected_by:
        changes.update({"rejected_by": None, "lab_comment": None})
    updated = commit_or_conflict(db, app, changes)
    logger.info(f"Payment recorded for application {application_id}")
    profile = student_profile(db, updated)
    notify_role(
        db, "lab_instructor",
        "Lab Charge Payment Submitted",
        f"{student_summary(updated, profile)} has submitted lab charge payment "
        f"(transaction {transaction_id}) for verification.",
        application_id=str(updated["_id"]), department=updated.get("department"),
    )
    return updated


def finalize_lab(db: Database, application_id: str, actor: Dict[str, Any],
                 approved: bool, comment: Optional[str] = None) -> dict:
    """
    Lab instructor decision. Approval verifies the payment and the lab
    together and is the only path to `completed`.
    """
    app = load_application(db, application_id)
    authorize_stage(db, app, "lab", actor)
    comment = check_comment("lab", approved, comment)

    rejected_by = app.get("rejected_by")
    if rejected_by and rejected_by != "lab":
        raise ConflictError(f"Application was rejected at the {STAGE_LABELS[rejected_by]} stage")
    if not rejected_by and app.get("lab_verified"):
        if approved:
            logger.info(f"Lab re-approval of {application_id} ignored, already completed")
            return app
        raise ConflictError("Lab verification is already complete")
    if not app.get("hod_verified"):
        raise ConflictError("Application has not been verified by the HOD")
    if not app.get("transaction_id"):
        raise ConflictError("Lab charge payment has not been recorded")

    now = datetime.utcnow()
    changes = {
        "lab_verified": approved,
        "payment_verified": approved,
        "lab_comment": comment,
        "lab_verified_at": now if approved else None,
        "payment_verified_at": now if approved else None,
        "rejected_by": None if approved else "lab",
    }
    updated = commit_or_conflict(db, app, changes)
    logger.info(f"Application {application_id} lab {'approved' if approved else 'rejected'}, "
                f"status={updated['status']}")

    if approved:
        notify_user(db, updated["student_id"], "No Due Certificate Approved!",
                    "Congratulations! Your no-due certificate is ready and can now be downloaded.",
                    audience_role="student", type_="success", application_id=str(updated["_id"]))
    else:
        notify_user(db, updated["student_id"], "Lab Verification Rejected",
                    f"Lab verification rejected. Reason: {comment or 'Not specified'}",
                    audience_role="student", type_="rejection", application_id=str(updated["_id"]))
    return updated


def list_queue(db: Database, stage: str, actor: Dict[str, Any], include_rejected: bool = False) -> List[dict]:
    """Applications waiting on `stage` that the actor may decide"""
    waiting_on = "payment" if stage == "lab" else stage
    filt: Dict[str, Any] = {"current_stage": waiting_on, "rejected_by": None}
    if include_rejected:
        filt = {"$or": [filt, {"rejected_by": stage}]}

    if stage == "counsellor":
        filt["counsellor_id"] = actor["id"]
    elif stage == "class_advisor":
        filt["class_advisor_id"] = actor["id"]
    elif stage in STAGE_ROLES:
        role = STAGE_ROLES[stage]
        if role not in actor.get("roles", []):
            raise AuthorizationError(f"Forbidden: {role} access required")
        if stage == "hod":
            staff = db[STAFF_PROFILES].find_one({"_id": ObjectId(actor["id"])}) or {}
            filt["department"] = staff.get("department")
    else:
        raise ValidationError(f"Unknown verification stage: {stage}")

    return list(db[APPLICATIONS].find(filt).sort("created_at", 1))
