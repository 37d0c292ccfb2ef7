"""
Subject/faculty aggregate verification.

Each application carries one assignment row per (subject, faculty) pair.
A faculty member decides only their own rows; the parent application's
faculty stage then follows the whole set:

- every row approved  -> faculty_verified, counsellor is notified once
- any row rejected    -> application rejected at the faculty stage
- otherwise           -> unchanged, student gets a progress notice

The parent write is a compare-and-swap on the application version. A
reviewer who loses the race re-reads the rows and re-evaluates, so two
faculty approving at the same time can neither skip nor double-fire the
transition. HODs reviewing the subjects they teach go through the same
path.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.database import Database

import config
from database import APPLICATIONS, APPLICATION_SUBJECT_FACULTY, STAFF_PROFILES, SUBJECTS
from errors import AuthorizationError, ConflictError
from notifications import notify_user
from workflow import (
    check_comment,
    commit_changes,
    load_application,
    notify_next_stage,
    student_profile,
)

logger = logging.getLogger(__name__)

ALL_APPROVED = "all_approved"
REJECTED = "rejected"
PARTIAL = "partial"

ROW_DECISION_FIELDS = ("faculty_verified", "verification_status", "faculty_comment", "verified_at", "updated_at")


def aggregate_outcome(rows: List[dict]) -> str:
    """Reject short-circuits; approval needs every sibling row"""
    statuses = [r.get("verification_status", "pending") for r in rows]
    if any(s == "rejected" for s in statuses):
        return REJECTED
    if statuses and all(s == "approved" for s in statuses):
        return ALL_APPROVED
    return PARTIAL


def _parent_changes(outcome: str, comment: Optional[str]) -> Dict[str, Any]:
    if outcome == ALL_APPROVED:
        return {
            "faculty_verified": True,
            "faculty_comment": comment,
            "faculty_verified_at": datetime.utcnow(),
            "rejected_by": None,
        }
    if outcome == REJECTED:
        return {
            "faculty_verified": False,
            "faculty_comment": comment,
            "faculty_verified_at": None,
            "rejected_by": "faculty",
        }
    return {"faculty_verified": False, "faculty_verified_at": None, "rejected_by": None}


def _ensure_reviewable(app: dict) -> None:
    rejected_by = app.get("rejected_by")
    if rejected_by and rejected_by != "faculty":
        raise ConflictError("Application has been rejected at another stage")
    if not rejected_by and not app.get("faculty_verified") and app.get("current_stage") != "faculty":
        raise ConflictError("Application is not awaiting faculty verification")
    if not rejected_by and app.get("faculty_verified"):
        raise ConflictError("Faculty verification is already complete")


def review_assignments(db: Database, application_id: str, faculty_id: str,
                       approved: bool, comment: Optional[str] = None) -> Dict[str, Any]:
    """
    Approve or reject the caller's own subject rows on one application and
    move the parent application according to the aggregate of all rows.
    """
    app = load_application(db, application_id)
    comment = check_comment("faculty", approved, comment)

    own_filter = {"application_id": application_id, "faculty_id": faculty_id}
    if db[APPLICATION_SUBJECT_FACULTY].count_documents(own_filter) == 0:
        raise AuthorizationError("No subjects on this application are assigned to you")
    _ensure_reviewable(app)

    previous = list(db[APPLICATION_SUBJECT_FACULTY].find(own_filter))
    now = datetime.utcnow()
    db[APPLICATION_SUBJECT_FACULTY].update_many(own_filter, {"$set": {
        "faculty_verified": approved,
        "verification_status": "approved" if approved else "rejected",
        "faculty_comment": comment,
        "verified_at": now if approved else None,
        "updated_at": now,
    }})

    for attempt in range(config.AGGREGATE_MAX_ATTEMPTS):
        if attempt:
            app = load_application(db, application_id)
        rows = list(db[APPLICATION_SUBJECT_FACULTY].find({"application_id": application_id}))
        outcome = aggregate_outcome(rows)
        was_verified = bool(app.get("faculty_verified"))
        was_rejected = app.get("rejected_by") == "faculty"

        changes = _parent_changes(outcome, comment)
        if outcome == REJECTED and approved:
            # keep the rejecting reviewer's reason on the parent
            changes.pop("faculty_comment")
        updated = commit_changes(db, app, changes)
        if updated is None:
            logger.info(f"Faculty aggregate on {application_id} lost a race, re-evaluating")
            continue

        logger.info(f"Faculty {faculty_id} {'approved' if approved else 'rejected'} subjects on "
                    f"{application_id}: outcome={outcome}, status={updated['status']}")
        _notify(db, updated, faculty_id, outcome, approved, comment, was_verified, was_rejected)
        return {"outcome": outcome, "application": updated, "assignments": rows}

    # Parent never moved, so put the caller's rows back to match it
    for row in previous:
        db[APPLICATION_SUBJECT_FACULTY].update_one(
            {"_id": row["_id"]},
            {"$set": {field: row.get(field) for field in ROW_DECISION_FIELDS}},
        )
    logger.warning(f"Faculty aggregate on {application_id} gave up after "
                   f"{config.AGGREGATE_MAX_ATTEMPTS} attempts, reverted {len(previous)} row(s)")
    raise ConflictError("Application is being updated by other reviewers, please retry")


def _notify(db: Database, app: dict, faculty_id: str, outcome: str, approved: bool,
            comment: Optional[str], was_verified: bool, was_rejected: bool) -> None:
    app_id = str(app["_id"])
    note = f" {comment}" if comment else ""

    if outcome == REJECTED:
        if approved and was_rejected:
            # Another faculty member's rejection still stands
            return
        notify_user(db, app["student_id"], "Application Rejected",
                    f"Your application was rejected by faculty. Reason: {comment or 'Not specified'}",
                    audience_role="student", type_="rejection", application_id=app_id)
        return

    if outcome == ALL_APPROVED:
        if was_verified:
            return
        notify_user(db, app["student_id"], "All Faculty Verified",
                    "All faculty members have verified your subjects. Your application is now "
                    f"proceeding to counsellor verification.{note}",
                    audience_role="student", type_="approval", application_id=app_id)
        notify_next_stage(db, app, student_profile(db, app), "faculty")
        return

    staff = db[STAFF_PROFILES].find_one({"_id": ObjectId(faculty_id)}) if ObjectId.is_valid(faculty_id) else None
    name = (staff or {}).get("name") or "A faculty member"
    notify_user(db, app["student_id"], "Subject Verification Completed",
                f"{name} has verified your subjects. Waiting for other faculty verifications.{note}",
                audience_role="student", type_="info", application_id=app_id)


def list_assigned(db: Database, faculty_id: str, include_done: bool = False) -> List[dict]:
    """
    Applications with rows assigned to `faculty_id` that have reached the
    faculty stage, each with the caller's own rows attached.
    """
    rows = list(db[APPLICATION_SUBJECT_FACULTY].find({"faculty_id": faculty_id}))
    by_app: Dict[str, List[dict]] = {}
    for row in rows:
        by_app.setdefault(row["application_id"], []).append(row)
    if not by_app:
        return []

    subjects = {
        str(s["_id"]): s for s in db[SUBJECTS].find(
            {"_id": {"$in": [ObjectId(r["subject_id"]) for r in rows if ObjectId.is_valid(r["subject_id"])]}}
        )
    }
    apps = db[APPLICATIONS].find({
        "_id": {"$in": [ObjectId(a) for a in by_app]},
        "college_office_verified": True,
    }).sort("created_at", 1)

    result = []
    for app in apps:
        own = by_app[str(app["_id"])]
        pending = any(r.get("verification_status", "pending") == "pending" for r in own)
        if not include_done and not pending:
            continue
        app["faculty_assignments"] = [
            {
                "id": str(r["_id"]),
                "subject_id": r["subject_id"],
                "subject_name": subjects.get(r["subject_id"], {}).get("name"),
                "subject_code": subjects.get(r["subject_id"], {}).get("code"),
                "verification_status": r.get("verification_status", "pending"),
                "faculty_comment": r.get("faculty_comment"),
                "verified_at": r.get("verified_at"),
            }
            for r in own
        ]
        result.append(app)
    return result
