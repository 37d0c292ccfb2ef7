import os

# config is read at import time
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["ADMIN_REGISTRATION_CODE"] = "let-me-in"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime
from types import SimpleNamespace
from typing import Any, Dict

import mongomock
import pytest
from faker import Faker
from fastapi.testclient import TestClient

import workflow
from database import PROFILES, STAFF_PROFILES, SUBJECTS, USERS, ensure_indexes, get_db
from main import app
from schemas import SubjectFaculty, SubmitApplicationRequest
from security import assign_role, create_access_token, get_password_hash
from submission import submit_application

fake = Faker()
Faker.seed(20231027)

DEFAULT_PASSWORD = "correct-horse-battery"


@pytest.fixture
def db():
    database = mongomock.MongoClient()["nodue_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


class Seeder:
    """Writes users, profiles and subjects straight into the database"""

    def __init__(self, db):
        self.db = db

    def _identity(self, name: str, email: str, roles) -> Any:
        user_id = self.db[USERS].insert_one({
            "email": email.lower(),
            "password_hash": get_password_hash(DEFAULT_PASSWORD),
            "name": name,
            "password_change_required": False,
            "created_at": datetime.utcnow(),
        }).inserted_id
        for role in roles:
            assign_role(self.db, str(user_id), role)
        return user_id

    @staticmethod
    def _actor(user_id, roles, name, email) -> Dict[str, Any]:
        token = create_access_token(str(user_id))
        return {
            "id": str(user_id),
            "roles": list(roles),
            "name": name,
            "email": email.lower(),
            "headers": {"Authorization": f"Bearer {token}"},
        }

    def staff(self, *roles, department="CSE", designation="Assistant Professor", is_active=True):
        name = fake.name()
        email = fake.unique.email()
        user_id = self._identity(name, email, roles)
        self.db[STAFF_PROFILES].insert_one({
            "_id": user_id,
            "name": name,
            "email": email,
            "employee_id": fake.unique.bothify("EMP####"),
            "department": department,
            "designation": designation,
            "is_active": is_active,
        })
        return self._actor(user_id, roles, name, email)

    def student(self, student_type="local", batch="2023-27", semester=5, department="CSE", completed=True):
        name = fake.name()
        usn = fake.unique.bothify("1AB23CS###")
        email = f"{usn.lower()}@temp.edu"
        user_id = self._identity(name, email, ["student"])
        self.db[PROFILES].insert_one({
            "_id": user_id,
            "name": name,
            "email": email,
            "usn": usn,
            "department": department,
            "semester": semester,
            "section": "A",
            "batch": batch,
            "student_type": student_type,
            "profile_completed": completed,
        })
        actor = self._actor(user_id, ["student"], name, email)
        actor["usn"] = usn
        return actor

    def subject(self, code: str, semester=5, department="CSE", is_elective=False) -> str:
        return str(self.db[SUBJECTS].insert_one({
            "code": code,
            "name": fake.catch_phrase(),
            "department": department,
            "semester": semester,
            "is_elective": is_elective,
        }).inserted_id)


@pytest.fixture
def seed(db):
    return Seeder(db)


@pytest.fixture
def world(seed):
    """A CSE department with one of every role, four subjects and two students"""
    return SimpleNamespace(
        admin=seed.staff("admin", designation="Administrator", department=None),
        library=[seed.staff("library", designation="Librarian", department=None) for _ in range(2)],
        hostel=seed.staff("hostel", designation="Warden", department=None),
        college_office=seed.staff("college_office", designation="Office Superintendent", department=None),
        hod=seed.staff("hod", designation="HOD"),
        lab=seed.staff("lab_instructor", designation="Lab Instructor"),
        counsellor=seed.staff("faculty", designation="Assistant Professor"),
        class_advisor=seed.staff("faculty", designation="Associate Professor"),
        faculty=[seed.staff("faculty") for _ in range(4)],
        subjects=[
            seed.subject("CS501"),
            seed.subject("CS502"),
            seed.subject("CS503"),
            seed.subject("CS5E1", is_elective=True),
        ],
        student=seed.student("local"),
        hostel_student=seed.student("hostel"),
    )


@pytest.fixture
def make_request(world):
    def _make(semester=5, batch="2023-27", department="CSE", **overrides) -> SubmitApplicationRequest:
        data = {
            "department": department,
            "semester": semester,
            "batch": batch,
            "subjects": [
                SubjectFaculty(subject_id=s, faculty_id=f["id"])
                for s, f in zip(world.subjects, world.faculty)
            ],
            "counsellor_id": world.counsellor["id"],
            "class_advisor_id": world.class_advisor["id"],
        }
        data.update(overrides)
        return SubmitApplicationRequest(**data)

    return _make


@pytest.fixture
def submit(db, world, make_request):
    """Submit an application for a student, returning its id"""

    def _submit(student=None, **overrides) -> str:
        student = student or world.student
        doc = submit_application(db, student["id"], make_request(**overrides))
        return str(doc["_id"])

    return _submit


@pytest.fixture
def advance(db):
    """Mark stages verified without going through their reviewers"""

    def _advance(app_id: str, *stages, **extra) -> dict:
        app_doc = workflow.load_application(db, app_id)
        changes = {f"{stage}_verified": True for stage in stages}
        changes.update(extra)
        return workflow.commit_or_conflict(db, app_doc, changes)

    return _advance
