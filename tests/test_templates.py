import pytest

from docreg.scheduled_jobs.errors import ValidationError
from docreg.scheduled_jobs.templates import build_subject, ensure_template, render_email, template_names


def test_known_templates():
    assert template_names() == ("fi-batch-notification", "fi-notification", "report-ready")
    assert ensure_template(None) == "fi-notification"
    with pytest.raises(ValidationError):
        ensure_template("welcome-back")


def test_subject_defaults_and_override():
    assert build_subject("fi-notification", ["acoustic", "flood"]) == "FI Requests Detected - Acoustic, Flood"
    assert build_subject("report-ready", ["waste"]) == "Reports Ready - Waste"
    assert build_subject("fi-notification", ["acoustic"], "  Custom  ") == "Custom"


def test_render_escapes_customer_values():
    html = render_email(
        "fi-notification",
        {"customer_name": "<script>alert(1)</script>", "report_types": ["acoustic"], "job_id": "JOB_1"},
    )
    assert "<script>" not in html
    assert "&lt;script&gt;" in html
    assert "JOB_1" in html


def test_batch_template_groups_matches_by_type():
    html = render_email(
        "fi-batch-notification",
        {
            "matches": [
                {"project_title": "Mill Lane", "report_type": "acoustic"},
                {"project_title": "River Walk", "report_type": "flood"},
                {"project_id": "P-9"},
            ],
            "total_matches": 3,
            "processed_projects": 2,
        },
    )
    assert "3 matching requests" in html
    assert "Mill Lane" in html and "River Walk" in html
    assert "Other" in html
