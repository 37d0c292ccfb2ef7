from bson import ObjectId

from database import (
    APPLICATIONS,
    APPLICATION_SUBJECT_FACULTY,
    AUDIT_LOGS,
    BATCHES,
    NOTIFICATIONS,
    PROFILES,
    STAFF_PROFILES,
    USER_ROLES,
    USERS,
)
from faculty_review import review_assignments
from security import has_role

STUDENTS = [
    {"name": "Asha Rao", "usn": "1AB23CS001", "department": "CSE", "batch": "2023-27"},
    {"name": "Vikram Shetty", "usn": "1AB23CS002", "department": "CSE", "batch": "2023-27"},
]


def _login(client, email, password):
    return client.post("/auth/login", json={"email": email, "password": password})


# ---------- Access ----------
def test_admin_routes_need_a_token(client):
    res = client.get("/admin/batches")
    assert res.status_code == 401
    assert res.json()["code"] == "AUTH_FAILED"


def test_admin_routes_need_the_admin_role(client, world):
    res = client.get("/admin/batches", headers=world.library[0]["headers"])
    assert res.status_code == 403
    assert res.json()["code"] == "NOT_AUTHORIZED"


def test_garbage_token_is_rejected(client):
    res = client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401


def test_register_admin_checks_code(client, db):
    body = {"name": "Site Admin", "email": "root@college.edu", "password": "long-enough-pw", "admin_code": "nope"}
    assert client.post("/auth/register-admin", json=body).status_code == 403

    res = client.post("/auth/register-admin", json={**body, "admin_code": "let-me-in"})
    assert res.status_code == 200
    user_id = res.json()["id"]
    assert has_role(db, user_id, "admin")

    token = _login(client, "ROOT@college.edu", "long-enough-pw").json()["access_token"]
    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"}).json()
    assert me["roles"] == ["admin"]
    assert me["staff_profile"]["designation"] == "Administrator"


# ---------- Accounts ----------
def test_create_faculty_signs_in_with_employee_id(client, db, world):
    body = {
        "name": "Meera Iyer",
        "email": "meera@college.edu",
        "employee_id": "EMP9001",
        "department": "CSE",
        "designation": "Assistant Professor",
        "role": "faculty",
    }
    res = client.post("/admin/faculty", json=body, headers=world.admin["headers"])
    assert res.status_code == 201
    user_id = res.json()["user_id"]
    assert has_role(db, user_id, "faculty")
    assert db[AUDIT_LOGS].find_one({"action": "create_faculty", "record_id": user_id})

    assert _login(client, "meera@college.edu", "EMP9001").status_code == 200
    assert _login(client, "meera@college.edu", "wrong").status_code == 401

    again = client.post("/admin/faculty", json=body, headers=world.admin["headers"])
    assert again.status_code == 409


def test_create_staff_roles(client, db, world):
    body = {"name": "Ravi Kumar", "email": "ravi@college.edu", "employee_id": "LIB07", "role": "library"}
    res = client.post("/admin/staff", json=body, headers=world.admin["headers"])
    assert res.status_code == 201
    assert has_role(db, res.json()["user_id"], "library")
    staff = db[STAFF_PROFILES].find_one({"email": "ravi@college.edu"})
    assert staff["date_of_joining"]


def test_bulk_students_validate_everything_first(client, db, world):
    bad = {"name": "Bad Usn", "usn": "cs-001", "department": "CSE", "batch": "2023-27"}
    res = client.post("/admin/students", json={"students": STUDENTS + [bad]}, headers=world.admin["headers"])

    assert res.status_code == 400
    body = res.json()
    assert body["detail"] == "Validation failed"
    assert [e["usn"] for e in body["details"]["errors"]] == ["cs-001"]
    assert db[PROFILES].count_documents({"usn": {"$in": ["1AB23CS001", "1AB23CS002"]}}) == 0


def test_bulk_students_are_created(client, db, world):
    res = client.post("/admin/students", json={"students": STUDENTS}, headers=world.admin["headers"])
    assert res.status_code == 200
    assert res.json() == {"success": ["1AB23CS001", "1AB23CS002"], "errors": []}

    profile = db[PROFILES].find_one({"usn": "1AB23CS001"})
    assert profile["semester"] == 1
    assert profile["profile_completed"] is False
    assert profile["email"] == "1ab23cs001@temp.edu"
    assert has_role(db, str(profile["_id"]), "student")

    assert _login(client, "1ab23cs001@temp.edu", "1AB23CS001").status_code == 200

    again = client.post("/admin/students", json={"students": STUDENTS[:1]}, headers=world.admin["headers"])
    assert again.json()["success"] == []
    assert "already exists" in again.json()["errors"][0]["message"]


# ---------- Batches & subjects ----------
def test_batch_lifecycle(client, db, world):
    res = client.post("/admin/batches", json={"start_year": 2024, "end_year": 2028},
                      headers=world.admin["headers"])
    assert res.status_code == 201
    batch_id = res.json()["id"]
    assert db[BATCHES].find_one({"name": "2024-28"})

    dup = client.post("/admin/batches", json={"start_year": 2024, "end_year": 2028},
                      headers=world.admin["headers"])
    assert dup.status_code == 409

    backwards = client.post("/admin/batches", json={"start_year": 2024, "end_year": 2020},
                            headers=world.admin["headers"])
    assert backwards.status_code == 400

    client.post("/admin/students", json={"students": [
        {"name": "New Student", "usn": "1AB24CS001", "department": "CSE", "batch": "2024-28"},
    ]}, headers=world.admin["headers"])
    res = client.post(f"/admin/batches/{batch_id}/semester", json={"semester": 3},
                      headers=world.admin["headers"])
    assert res.json()["students_updated"] == 1
    assert db[PROFILES].find_one({"usn": "1AB24CS001"})["semester"] == 3

    res = client.delete(f"/admin/batches/{batch_id}", headers=world.admin["headers"])
    assert res.status_code == 200
    assert res.json()["deleted"]["students"] == 1
    assert db[PROFILES].find_one({"usn": "1AB24CS001"}) is None
    assert db[USERS].find_one({"email": "1ab24cs001@temp.edu"}) is None
    assert db[BATCHES].find_one({"name": "2024-28"}) is None


def test_create_subject(client, world):
    body = {"code": "CS601", "name": "Compiler Design", "department": "CSE", "semester": 6}
    res = client.post("/admin/subjects", json=body, headers=world.admin["headers"])
    assert res.status_code == 201
    assert client.post("/admin/subjects", json=body, headers=world.admin["headers"]).status_code == 409

    listed = client.get("/subjects", params={"semester": 6}, headers=world.student["headers"]).json()
    assert [s["code"] for s in listed] == ["CS601"]


# ---------- Submission settings ----------
def test_submission_windows(client, db, world):
    headers = world.admin["headers"]
    res = client.put("/admin/submission-settings", json={"enabled": False}, headers=headers)
    assert res.status_code == 200

    window = client.get("/submission-window", headers=world.student["headers"]).json()
    assert window["allowed"] is False

    assert client.put("/admin/submission-settings/1999-03", json={"enabled": True},
                      headers=headers).status_code == 404

    db[BATCHES].insert_one({"name": "2023-27", "start_year": 2023, "end_year": 2027, "current_semester": 5})
    client.put("/admin/submission-settings/2023-27", json={"enabled": True}, headers=headers)
    assert client.get("/submission-window", headers=world.student["headers"]).json()["allowed"] is True

    assert client.delete("/admin/submission-settings/2023-27", headers=headers).json() == {"cleared": True}
    assert client.get("/submission-window", headers=world.student["headers"]).json()["allowed"] is False


# ---------- Deletes ----------
def test_delete_application_cascades(client, db, world, submit):
    app_id = submit()
    res = client.delete(f"/admin/applications/{app_id}", headers=world.admin["headers"])

    assert res.status_code == 200
    deleted = res.json()["deleted"]
    assert deleted["applications"] == 1
    assert deleted["faculty_assignments"] == 4
    assert deleted["notifications"] > 0
    assert db[APPLICATION_SUBJECT_FACULTY].count_documents({}) == 0
    assert db[NOTIFICATIONS].count_documents({"related_entity_id": app_id}) == 0

    audit = db[AUDIT_LOGS].find_one({"action": "DELETE_APPLICATION"})
    assert audit["record_id"] == app_id
    assert audit["user_id"] == world.admin["id"]

    assert client.delete(f"/admin/applications/{app_id}", headers=world.admin["headers"]).status_code == 404
    assert client.delete("/admin/applications/xyz", headers=world.admin["headers"]).status_code == 400


def test_delete_faculty(client, db, world, submit, advance):
    app_id = submit()
    member = world.faculty[0]
    blocked = client.delete(f"/admin/faculty/{member['id']}", headers=world.admin["headers"])
    assert blocked.status_code == 409
    assert db[APPLICATION_SUBJECT_FACULTY].count_documents({"faculty_id": member["id"]}) == 1
    assert has_role(db, member["id"], "faculty")

    advance(app_id, "library", "college_office", "faculty")
    res = client.delete(f"/admin/faculty/{member['id']}", headers=world.admin["headers"])
    assert res.status_code == 200
    assert res.json()["deleted"]["faculty_assignments_kept"] == 1
    assert db[APPLICATION_SUBJECT_FACULTY].count_documents({"application_id": app_id}) == 4
    assert db[USER_ROLES].count_documents({"user_id": member["id"]}) == 0
    assert db[STAFF_PROFILES].count_documents({"_id": ObjectId(member["id"])}) == 0

    not_faculty = client.delete(f"/admin/faculty/{world.library[0]['id']}", headers=world.admin["headers"])
    assert not_faculty.status_code == 400


def test_delete_faculty_keeps_rejected_aggregate_intact(client, db, world, submit, advance):
    app_id = submit()
    advance(app_id, "library", "college_office")
    for member in world.faculty[1:]:
        review_assignments(db, app_id, member["id"], approved=True)
    review_assignments(db, app_id, world.faculty[0]["id"], approved=False, comment="Lab record missing")

    res = client.delete(f"/admin/faculty/{world.faculty[0]['id']}", headers=world.admin["headers"])
    assert res.status_code == 409
    statuses = sorted(r["verification_status"] for r in db[APPLICATION_SUBJECT_FACULTY].find({"application_id": app_id}))
    assert statuses == ["approved", "approved", "approved", "rejected"]
    app = db[APPLICATIONS].find_one({"_id": ObjectId(app_id)})
    assert app["status"] == "rejected"
    assert app["rejected_by"] == "faculty"


def test_delete_student(client, db, world, submit):
    submit()
    res = client.delete(f"/admin/students/{world.student['id']}", headers=world.admin["headers"])
    assert res.status_code == 200
    assert res.json()["deleted"]["applications"] == 1
    assert db[APPLICATIONS].count_documents({"student_id": world.student["id"]}) == 0
    assert db[USERS].count_documents({"email": world.student["email"]}) == 0


def test_audit_log_listing(client, world):
    client.post("/admin/batches", json={"start_year": 2025, "end_year": 2029}, headers=world.admin["headers"])
    logs = client.get("/admin/audit-logs", params={"action": "create_batch"}, headers=world.admin["headers"]).json()
    assert len(logs) == 1
    assert logs[0]["metadata"] == {"name": "2025-29"}
