import pytest

from database import GLOBAL_SUBMISSION_SETTINGS, NOTIFICATIONS


@pytest.fixture
def applicant(seed):
    return seed.student(completed=False)


def _payload(world):
    return {
        "department": "CSE",
        "semester": 5,
        "batch": "2023-27",
        "subjects": [{"subject_id": s, "faculty_id": f["id"]} for s, f in zip(world.subjects, world.faculty)],
        "counsellor_id": world.counsellor["id"],
        "class_advisor_id": world.class_advisor["id"],
    }


def _decide(client, actor, path, approved=True, comment=None):
    res = client.post(path, json={"approved": approved, "comment": comment}, headers=actor["headers"])
    assert res.status_code == 200, res.json()
    return res.json()


def test_root_and_request_id(client):
    res = client.get("/", headers={"X-Request-ID": "abc123"})
    assert res.status_code == 200
    assert res.headers["X-Request-ID"] == "abc123"


def test_full_clearance_flow(client, db, world, applicant):
    student_headers = applicant["headers"]

    blocked = client.post("/applications", json=_payload(world), headers=student_headers)
    assert blocked.status_code == 400
    assert blocked.json()["detail"] == "Profile must be completed before submitting application"

    profile = client.put("/profile", json={"student_type": "hostel", "phone": "9876543210", "section": "B"},
                         headers=student_headers)
    assert profile.status_code == 200
    assert profile.json()["profile_completed"] is True

    advisors = client.get("/staff/advisors", params={"department": "CSE"}, headers=student_headers).json()
    assert {world.counsellor["id"], world.class_advisor["id"], world.hod["id"]} <= {a["id"] for a in advisors}

    res = client.post("/applications", json=_payload(world), headers=student_headers)
    assert res.status_code == 200
    assert res.json()["status"] == "pending"
    app_id = res.json()["application_id"]
    base = f"/applications/{app_id}"

    queue = client.get("/queues/library", headers=world.library[0]["headers"]).json()
    assert [a["id"] for a in queue] == [app_id]

    _decide(client, world.library[0], f"{base}/verify/library")
    app = _decide(client, world.hostel, f"{base}/verify/hostel")
    assert app["status"] == "college_office_verification_pending"
    app = _decide(client, world.college_office, f"{base}/verify/college_office")
    assert app["status"] == "college_office_verified"

    assigned = client.get("/queues/faculty", headers=world.faculty[0]["headers"]).json()
    assert [a["id"] for a in assigned] == [app_id]
    assert assigned[0]["faculty_assignments"][0]["verification_status"] == "pending"

    outcomes = [
        _decide(client, member, f"{base}/faculty-review")["outcome"]
        for member in world.faculty
    ]
    assert outcomes == ["partial", "partial", "partial", "all_approved"]

    _decide(client, world.counsellor, f"{base}/verify/counsellor")
    _decide(client, world.class_advisor, f"{base}/verify/class_advisor")
    app = _decide(client, world.hod, f"{base}/verify/hod")
    assert app["status"] == "hod_verified"

    early = client.get(f"{base}/certificate", headers=student_headers)
    assert early.status_code == 409

    paid = client.post(f"{base}/payment", json={"transaction_id": "UPI-20240517-01"}, headers=student_headers)
    assert paid.status_code == 200
    assert paid.json()["status"] == "payment_pending"

    app = _decide(client, world.lab, f"{base}/lab-verification", comment="Cleared")
    assert app["status"] == "completed"

    cert = client.get(f"{base}/certificate", headers=student_headers)
    assert cert.status_code == 200
    assert cert.headers["content-type"].startswith("text/html")
    assert cert.text.count('class="clearance-item"') == 9

    assert client.get(f"{base}/certificate", headers=world.student["headers"]).status_code == 403
    assert client.get(f"{base}/certificate", headers=world.hod["headers"]).status_code == 200

    mine = client.get("/applications/mine", headers=student_headers).json()
    assert [a["status"] for a in mine] == ["completed"]

    detail = client.get(base, headers=student_headers).json()
    assert len(detail["faculty_assignments"]) == 4
    assert db[NOTIFICATIONS].count_documents({"user_id": applicant["id"], "type": "success"}) == 1


def test_verification_errors_map_to_status_codes(client, world, submit):
    app_id = submit()
    base = f"/applications/{app_id}"

    unknown = client.post(f"{base}/verify/canteen", json={"approved": True}, headers=world.library[0]["headers"])
    assert unknown.status_code == 404

    wrong_role = client.post(f"{base}/verify/library", json={"approved": True}, headers=world.hostel["headers"])
    assert wrong_role.status_code == 403

    no_reason = client.post(f"{base}/verify/library", json={"approved": False},
                            headers=world.library[0]["headers"])
    assert no_reason.status_code == 400
    assert no_reason.json()["code"] == "VALIDATION_ERROR"

    out_of_order = client.post(f"{base}/verify/college_office", json={"approved": True},
                               headers=world.college_office["headers"])
    assert out_of_order.status_code == 409
    assert out_of_order.json()["code"] == "CONFLICT"

    not_faculty = client.post(f"{base}/faculty-review", json={"approved": True}, headers=world.library[0]["headers"])
    assert not_faculty.status_code == 403

    missing = client.get("/applications/65f000000000000000000000", headers=world.library[0]["headers"])
    assert missing.status_code == 404


def test_students_only_see_their_own_application(client, world, submit):
    app_id = submit()
    assert client.get(f"/applications/{app_id}", headers=world.student["headers"]).status_code == 200
    assert client.get(f"/applications/{app_id}", headers=world.hostel_student["headers"]).status_code == 403


def test_submission_http_errors(client, db, world):
    payload = _payload(world)
    headers = world.student["headers"]

    db[GLOBAL_SUBMISSION_SETTINGS].insert_one({"enabled": False})
    closed = client.post("/applications", json=payload, headers=headers)
    assert closed.status_code == 403
    assert closed.json()["code"] == "SUBMISSION_CLOSED"
    db[GLOBAL_SUBMISSION_SETTINGS].delete_many({})

    assert client.post("/applications", json=payload, headers=headers).status_code == 200
    duplicate = client.post("/applications", json=payload, headers=headers)
    assert duplicate.status_code == 409

    staff_submit = client.post("/applications", json=payload, headers=world.hod["headers"])
    assert staff_submit.status_code == 403


def test_faculty_directory_lists_teaching_staff(client, world):
    listed = client.get("/staff/faculty", params={"department": "CSE"}, headers=world.student["headers"]).json()
    ids = {f["id"] for f in listed}
    assert {m["id"] for m in world.faculty} <= ids
    assert world.hod["id"] in ids
    assert world.library[0]["id"] not in ids
