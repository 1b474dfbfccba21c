import pytest

from docreg.scheduled_jobs import collaborators
from docreg.scheduled_jobs.collaborators import (
    HttpReportGenerator,
    OutgoingEmail,
    ReportRequest,
    SmtpMailSender,
    SqlCustomerDirectory,
)
from docreg.scheduled_jobs.errors import ExternalCollaboratorError


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


REQUEST = ReportRequest(job_id="JOB_1", report_types=["acoustic"], project_ids=["P-1"], customer_ids=["c1"])


def test_sql_directory_resolves_customers(manager):
    row = manager.create_customer(name="Erin", email="erin@example.com")
    directory = SqlCustomerDirectory(manager.database_url)

    snap = directory.resolve(row["id"])
    assert snap.email == "erin@example.com"
    assert snap.name == "Erin"
    assert directory.resolve("missing") is None


def test_http_generator_parses_response(monkeypatch):
    seen = {}

    def fake_post(url, json, timeout):
        seen.update(url=url, json=json, timeout=timeout)
        return FakeResponse(
            200,
            {
                "report_ids": ["R1", "R2"],
                "preview_html": "<p>x</p>",
                "customer_matches": {"c1": [{"project_id": "P-1"}]},
                "total_matches": 1,
                "processed_projects": 1,
            },
        )

    monkeypatch.setattr(collaborators.requests, "post", fake_post)

    result = HttpReportGenerator("http://reports.local/generate").generate(REQUEST, timeout=12)

    assert seen["json"]["report_types"] == ["acoustic"]
    assert seen["timeout"] == 12
    assert result.artifact_refs == ["R1", "R2"]
    assert result.customer_matches == {"c1": [{"project_id": "P-1"}]}


def test_http_generator_errors(monkeypatch):
    monkeypatch.setattr(collaborators.requests, "post", lambda url, json, timeout: FakeResponse(502, {}))
    with pytest.raises(ExternalCollaboratorError):
        HttpReportGenerator("http://reports.local/generate").generate(REQUEST, timeout=1)

    with pytest.raises(ExternalCollaboratorError):
        HttpReportGenerator(None).generate(REQUEST, timeout=1)


def test_smtp_message_includes_html_and_attachments(tmp_path):
    report = tmp_path / "report.pdf"
    report.write_bytes(b"%PDF-1.4")
    sender = SmtpMailSender(host="localhost", port=25, sender="noreply@example.com", use_tls=False)

    msg = sender._build(
        OutgoingEmail(
            to="alice@example.com",
            subject="FI Requests Detected - Acoustic",
            html_body="<p>Hello</p>",
            attachments=[str(report), str(tmp_path / "missing.pdf")],
        )
    )

    assert msg["To"] == "alice@example.com"
    assert msg["Subject"] == "FI Requests Detected - Acoustic"
    names = [part.get_filename() for part in msg.iter_attachments()]
    assert names == ["report.pdf"]
