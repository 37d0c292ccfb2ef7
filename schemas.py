"""
Database Schemas for the No-Due Certificate Workflow

Each document model corresponds to a MongoDB collection (see database.py
for the collection names). Request models validate API payloads.

Key Collections:
- Profile / StaffProfile: students and staff, keyed by the auth user id
- Application: one no-due request per (student, semester, batch)
- ApplicationSubjectFaculty: one row per (subject, faculty) pair on an application
- Notification: per-user messages fanned out on stage transitions
- AuditLog: append-only trail of privileged mutations
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

Department = Literal["MECH", "CSE", "CIVIL", "EC", "AIML", "CD"]
StudentType = Literal["local", "hostel"]
Section = Literal["A", "B"]
AppRole = Literal[
    "admin", "student", "faculty", "library", "hostel", "college_office",
    "hod", "lab_instructor", "counsellor", "class_advisor",
]
VerificationStatus = Literal["pending", "approved", "rejected"]
NotificationType = Literal["info", "approval", "rejection", "success"]

DEPARTMENTS = ("MECH", "CSE", "CIVIL", "EC", "AIML", "CD")
ADVISOR_DESIGNATIONS = ("HOD", "Assistant Professor", "Associate Professor")

BATCH_PATTERN = r"^\d{4}-\d{2}$"
USN_PATTERN = r"^[0-9][A-Z]{2}[0-9]{2}[A-Z]{2,4}[0-9]{3}$"


# ---------- People ----------
class Profile(BaseModel):
    name: str = Field(..., description="Full name")
    email: Optional[str] = None
    usn: Optional[str] = Field(None, description="University seat number")
    department: Optional[Department] = None
    semester: Optional[int] = Field(1, ge=1, le=8)
    section: Optional[Section] = None
    batch: Optional[str] = Field(None, description="Batch name, e.g. 2023-27")
    student_type: Optional[StudentType] = None
    phone: Optional[str] = None
    profile_completed: bool = Field(False, description="Gates dashboard access and submission")


class StaffProfile(BaseModel):
    name: str
    email: EmailStr
    employee_id: Optional[str] = None
    department: Optional[Department] = None
    designation: Optional[str] = Field(None, description="e.g. HOD, Assistant Professor, Librarian")
    office_location: Optional[str] = None
    phone: Optional[str] = None
    date_of_joining: Optional[str] = None
    is_active: bool = True


# ---------- Applications ----------
class Application(BaseModel):
    student_id: str = Field(..., description="Profile id of the applicant")
    department: Department
    semester: int = Field(..., ge=1, le=8)
    batch: str
    student_type: StudentType = Field("local", description="Snapshot of the profile at submission")
    counsellor_id: str
    class_advisor_id: str

    library_verified: bool = False
    library_comment: Optional[str] = None
    library_verified_at: Optional[datetime] = None
    hostel_verified: bool = False
    hostel_comment: Optional[str] = None
    hostel_verified_at: Optional[datetime] = None
    college_office_verified: bool = False
    college_office_comment: Optional[str] = None
    college_office_verified_at: Optional[datetime] = None
    faculty_verified: bool = False
    faculty_comment: Optional[str] = None
    faculty_verified_at: Optional[datetime] = None
    counsellor_verified: bool = False
    counsellor_comment: Optional[str] = None
    counsellor_verified_at: Optional[datetime] = None
    class_advisor_verified: bool = False
    class_advisor_comment: Optional[str] = None
    class_advisor_verified_at: Optional[datetime] = None
    hod_verified: bool = False
    hod_comment: Optional[str] = None
    hod_verified_at: Optional[datetime] = None
    payment_verified: bool = False
    payment_comment: Optional[str] = None
    payment_verified_at: Optional[datetime] = None
    lab_verified: bool = False
    lab_comment: Optional[str] = None
    lab_verified_at: Optional[datetime] = None

    transaction_id: Optional[str] = None
    rejected_by: Optional[str] = Field(None, description="Stage that rejected the application")
    status: str = "pending"
    current_stage: Optional[str] = "library"
    version: int = 0


class ApplicationSubjectFaculty(BaseModel):
    application_id: str
    subject_id: str
    faculty_id: str
    faculty_verified: bool = False
    verification_status: VerificationStatus = "pending"
    faculty_comment: Optional[str] = None
    verified_at: Optional[datetime] = None


class Notification(BaseModel):
    user_id: str
    title: str
    message: str
    type: NotificationType = "info"
    audience_role: AppRole = Field(..., description="Role the recipient is addressed as")
    read: bool = False
    read_at: Optional[datetime] = None
    related_entity_type: Optional[str] = "application"
    related_entity_id: Optional[str] = None


class AuditLog(BaseModel):
    action: str
    table_name: str
    record_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    user_id: str


class Batch(BaseModel):
    name: str = Field(..., pattern=BATCH_PATTERN)
    start_year: int
    end_year: int
    current_semester: int = Field(1, ge=1, le=8)


class Subject(BaseModel):
    code: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    department: Department
    semester: int = Field(..., ge=1, le=8)
    is_elective: bool = False


class SubmissionWindow(BaseModel):
    enabled: bool = True
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None


# ---------- Requests ----------
class SubjectFaculty(BaseModel):
    subject_id: str
    faculty_id: str


class SubmitApplicationRequest(BaseModel):
    # Loose types on purpose: the submission gate validates in a fixed order
    department: str
    semester: int
    batch: str
    subjects: List[SubjectFaculty] = Field(default_factory=list)
    counsellor_id: str = ""
    class_advisor_id: str = ""


class VerificationDecision(BaseModel):
    approved: bool
    comment: Optional[str] = None


class PaymentSubmission(BaseModel):
    transaction_id: str = Field(..., min_length=1, max_length=100)


class ProfileUpdate(BaseModel):
    phone: Optional[str] = None
    section: Optional[Section] = None
    student_type: StudentType
    semester: Optional[int] = Field(None, ge=1, le=8)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class AdminRegistration(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    password: str = Field(..., min_length=8)
    admin_code: str


class FacultyCreate(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    employee_id: str = Field(..., min_length=1)
    department: Department
    designation: str = Field(..., min_length=1)
    role: Literal["faculty", "hod"]


class StaffCreate(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    employee_id: str = Field(..., min_length=1)
    phone: Optional[str] = None
    office_location: Optional[str] = None
    date_of_joining: Optional[str] = None
    designation: Optional[str] = None
    department: Optional[Department] = None
    role: Literal["library", "hostel", "lab_instructor", "college_office", "faculty", "hod", "admin"]


class StudentRecord(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=2, max_length=100, pattern=r"^[a-zA-Z\s]+$")
    usn: str = Field(..., pattern=USN_PATTERN)
    department: Department
    batch: str = Field(..., pattern=BATCH_PATTERN)


class StudentsCreate(BaseModel):
    students: List[Dict[str, Any]]


class BatchCreate(BaseModel):
    start_year: int = Field(..., ge=2000, le=2100)
    end_year: int = Field(..., ge=2000, le=2100)
    current_semester: int = Field(1, ge=1, le=8)


class SemesterUpdate(BaseModel):
    semester: int = Field(..., ge=1, le=8)
