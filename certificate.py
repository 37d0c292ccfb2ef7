"""
No-Due certificate rendering.

`render_certificate` is a pure function of the application and profile
documents: no I/O, no clock. The generated-on date is the application's
last update, so rendering the same application twice gives the same bytes.
"""

from datetime import datetime
from html import escape
from typing import Any, Dict, List, Optional

from workflow import STAGES

DEPARTMENT_NAMES = {
    "MECH": "Mechanical Engineering",
    "CSE": "Computer Science Engineering",
    "CIVIL": "Civil Engineering",
    "EC": "Electronics and Communication",
    "AIML": "Artificial Intelligence & Machine Learning",
    "CD": "Computer Science (Data Science)",
}

SECTION_TITLES = {
    "library": "Library Clearance",
    "hostel": "Hostel Clearance",
    "college_office": "College Office Clearance",
    "faculty": "Faculty Clearance",
    "counsellor": "Student Counsellor Verification",
    "class_advisor": "Class Advisor Verification",
    "hod": "HOD Approval",
    "payment": "Lab Charge Payment",
    "lab": "Lab Clearance",
}

_STYLE = """
body { font-family: 'Times New Roman', serif; margin: 40px; color: #111; }
.certificate { border: 4px double #1e3a8a; padding: 32px; }
h1 { text-align: center; color: #1e3a8a; margin: 0; }
h2 { text-align: center; font-weight: normal; margin-top: 4px; }
.detail-row { display: flex; margin: 4px 0; }
.detail-label { width: 140px; font-weight: bold; }
.clearance-item { border-bottom: 1px solid #ddd; padding: 8px 0; }
.clearance-name { font-weight: bold; }
.clearance-details { font-size: 0.9em; color: #444; }
.footer-info { margin-top: 24px; font-size: 0.85em; text-align: right; }
"""


def format_date(value: Optional[datetime]) -> str:
    if not isinstance(value, datetime):
        return "N/A"
    return value.strftime("%B %d, %Y")


def format_department(dept: Optional[str]) -> str:
    return DEPARTMENT_NAMES.get(dept, dept) if dept else "N/A"


def clearance_sections(application: Dict[str, Any]) -> List[Dict[str, str]]:
    """One entry per stage, in workflow order"""
    is_hostel = application.get("student_type") == "hostel"
    sections = []
    for stage in STAGES:
        if stage == "hostel" and not is_hostel:
            sections.append({
                "stage": stage,
                "title": SECTION_TITLES[stage],
                "verified_on": "Not applicable",
                "remarks": "Not applicable (local student)",
            })
            continue
        remarks = application.get(f"{stage}_comment") or "No remarks"
        if stage == "payment" and application.get("transaction_id"):
            remarks = f"Transaction ID: {application['transaction_id']}. {remarks}"
        verified_at = application.get(f"{stage}_verified_at") or application.get("updated_at")
        sections.append({
            "stage": stage,
            "title": SECTION_TITLES[stage],
            "verified_on": format_date(verified_at),
            "remarks": remarks,
        })
    return sections


def _detail(label: str, value: Any) -> str:
    return (f'<div class="detail-row"><div class="detail-label">{escape(label)}:</div>'
            f'<div class="detail-value">{escape(str(value if value is not None else "N/A"))}</div></div>')


def render_certificate(application: Dict[str, Any], profile: Dict[str, Any]) -> str:
    """Printable HTML certificate for a completed application"""
    name = profile.get("name") or "N/A"
    details = "\n".join([
        _detail("Name", name),
        _detail("USN", profile.get("usn")),
        _detail("Department", format_department(application.get("department") or profile.get("department"))),
        _detail("Semester", application.get("semester")),
        _detail("Batch", application.get("batch")),
        _detail("Section", profile.get("section")),
    ])

    items = []
    for section in clearance_sections(application):
        mark = "&#8212;" if section["verified_on"] == "Not applicable" else "&#10003;"
        items.append(
            f'<div class="clearance-item" data-stage="{section["stage"]}">'
            f'<div class="clearance-header"><span class="checkmark">{mark}</span> '
            f'<span class="clearance-name">{escape(section["title"])}</span></div>'
            f'<div class="clearance-details">'
            f'<div class="clearance-date">Verified on: {escape(section["verified_on"])}</div>'
            f'<div class="clearance-remarks">Remarks: {escape(section["remarks"])}</div>'
            f'</div></div>'
        )

    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>No Due Certificate - {escape(name)}</title>
<style>{_STYLE}</style>
</head>
<body>
<div class="certificate">
<h1>No Objection Certificate</h1>
<h2>Clearance Certificate</h2>
<div class="intro">This is to certify that the following student has successfully cleared all
requirements and has no pending dues or obligations with the institution.</div>
<div class="student-details">
{details}
</div>
<div class="clearance-section">
<div class="clearance-title">Clearance Details</div>
{chr(10).join(items)}
</div>
<div class="footer-info">Certificate Generated: {format_date(application.get('updated_at'))}</div>
<div class="footer-info">Application ID: {escape(str(application.get('_id', '')))}</div>
</div>
</body>
</html>
"""
