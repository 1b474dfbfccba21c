"""Contracts and default adapters for the manager's external collaborators.

The manager only talks to three things outside its own tables:

- a customer directory that resolves customer ids to an email/name snapshot
- a report generator that produces the artifacts a job mails out
- a mail sender that delivers one rendered message at a time

Tests swap these for in-memory fakes; the service wires the SQL, HTTP and
SMTP adapters defined here.
"""

from __future__ import annotations

import logging
import mimetypes
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import requests

from .errors import ExternalCollaboratorError
from .repo import get_customer


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CustomerSnapshot:
    customer_id: str
    email: str
    name: Optional[str] = None


@dataclass(frozen=True)
class ReportRequest:
    job_id: str
    report_types: List[str]
    project_ids: List[str]
    customer_ids: List[str]
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReportResult:
    artifact_refs: List[str] = field(default_factory=list)
    preview_html: Optional[str] = None
    paths: List[str] = field(default_factory=list)
    # customer id -> matches; None means the generator does not filter per customer.
    customer_matches: Optional[Dict[str, List[Dict[str, Any]]]] = None
    total_matches: int = 0
    processed_projects: int = 0


@dataclass(frozen=True)
class OutgoingEmail:
    to: str
    subject: str
    html_body: str
    attachments: List[str] = field(default_factory=list)


class MailBounced(ExternalCollaboratorError):
    """The transport accepted the attempt but the recipient was refused."""


class CustomerDirectory(Protocol):
    def resolve(self, customer_id: str) -> Optional[CustomerSnapshot]:
        ...


class ReportGenerator(Protocol):
    def generate(self, request: ReportRequest, *, timeout: float) -> ReportResult:
        ...


class MailSender(Protocol):
    def send(self, message: OutgoingEmail, *, timeout: float) -> None:
        ...


class SqlCustomerDirectory:
    """Customer directory backed by the ``customers`` table."""

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url

    def resolve(self, customer_id: str) -> Optional[CustomerSnapshot]:
        row = get_customer(self.database_url, str(customer_id))
        if not row:
            return None
        return CustomerSnapshot(customer_id=str(row["id"]), email=str(row["email"]), name=row.get("name"))


class HttpReportGenerator:
    """POSTs the report request as JSON to an external generation service."""

    def __init__(self, url: Optional[str]) -> None:
        self.url = (url or "").strip()

    def generate(self, request: ReportRequest, *, timeout: float) -> ReportResult:
        if not self.url:
            raise ExternalCollaboratorError("REPORT_GENERATOR_URL is not configured.")

        payload = {
            "job_id": request.job_id,
            "report_types": list(request.report_types),
            "project_ids": list(request.project_ids),
            "customer_ids": list(request.customer_ids),
            "config": dict(request.config or {}),
        }
        try:
            resp = requests.post(self.url, json=payload, timeout=timeout)
        except requests.RequestException as exc:
            raise ExternalCollaboratorError(f"Report generator unreachable: {exc}") from exc

        if resp.status_code >= 400:
            raise ExternalCollaboratorError(f"Report generator returned HTTP {resp.status_code}: {resp.text[:500]}")

        try:
            data = resp.json()
        except ValueError:
            raise ExternalCollaboratorError("Report generator returned invalid JSON.") from None
        if not isinstance(data, dict):
            raise ExternalCollaboratorError("Report generator returned an unexpected payload.")
        if data.get("ok") is False:
            raise ExternalCollaboratorError(str(data.get("error") or "Report generation failed."))

        matches = data.get("customer_matches")
        return ReportResult(
            artifact_refs=[str(x) for x in (data.get("artifact_refs") or data.get("report_ids") or [])],
            preview_html=data.get("preview_html"),
            paths=[str(x) for x in (data.get("paths") or [])],
            customer_matches={str(k): list(v or []) for k, v in matches.items()} if isinstance(matches, dict) else None,
            total_matches=int(data.get("total_matches") or 0),
            processed_projects=int(data.get("processed_projects") or 0),
        )


class SmtpMailSender:
    def __init__(
        self,
        *,
        host: str,
        port: int,
        sender: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = bool(use_tls)

    def _build(self, message: OutgoingEmail) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = message.to
        msg["Subject"] = message.subject
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(message.html_body, subtype="html")

        for raw_path in message.attachments:
            path = Path(raw_path)
            if not path.is_file():
                logger.warning("Skipping missing attachment %s", path)
                continue
            ctype, _ = mimetypes.guess_type(path.name)
            maintype, subtype = (ctype or "application/octet-stream").split("/", 1)
            msg.add_attachment(path.read_bytes(), maintype=maintype, subtype=subtype, filename=path.name)
        return msg

    def send(self, message: OutgoingEmail, *, timeout: float) -> None:
        msg = self._build(message)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except smtplib.SMTPRecipientsRefused as exc:
            raise MailBounced(f"Recipient refused: {message.to}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise ExternalCollaboratorError(f"SMTP error sending to {message.to}: {exc}") from exc
