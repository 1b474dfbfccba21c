from __future__ import annotations

from typing import Any, Dict, Iterable, Optional, Tuple

from jinja2 import DictLoader, Environment, TemplateNotFound, select_autoescape

from .errors import ValidationError


DEFAULT_TEMPLATE = "fi-notification"

_SOURCES: Dict[str, str] = {
    "fi-notification": """\
<html><body style="font-family: Arial, sans-serif; color: #1f2937;">
<h2>Further Information Requests Detected</h2>
<p>Hello {{ customer_name or "there" }},</p>
<p>The latest scan found further-information requests for:
<strong>{{ report_types | join(", ") }}</strong>.</p>
{% if matches %}
<ul>
{% for m in matches %}
  <li>{{ m.project_title or m.project_id or "Project" }}{% if m.report_type %} ({{ m.report_type }}){% endif %}{% if m.document_url %} - <a href="{{ m.document_url }}">view document</a>{% endif %}</li>
{% endfor %}
</ul>
{% endif %}
{% if preview_html %}<div>{{ preview_html | safe }}</div>{% endif %}
<p style="color:#6b7280; font-size: 12px;">Job {{ job_id }}. This is an automated notification.</p>
</body></html>
""",
    "fi-batch-notification": """\
<html><body style="font-family: Arial, sans-serif; color: #1f2937;">
<h2>FI Requests Summary</h2>
<p>Hello {{ customer_name or "there" }},</p>
<p>{{ total_matches }} matching request{{ "" if total_matches == 1 else "s" }} across
{{ processed_projects }} project{{ "" if processed_projects == 1 else "s" }}.</p>
{% for report_type, items in matches | groupby("report_type", default="Other") %}
<h3>{{ report_type }}</h3>
<ul>
{% for m in items %}
  <li>{{ m.project_title or m.project_id or "Project" }}</li>
{% endfor %}
</ul>
{% endfor %}
{% if preview_html %}<div>{{ preview_html | safe }}</div>{% endif %}
<p style="color:#6b7280; font-size: 12px;">Job {{ job_id }}. This is an automated notification.</p>
</body></html>
""",
    "report-ready": """\
<html><body style="font-family: Arial, sans-serif; color: #1f2937;">
<h2>Your reports are ready</h2>
<p>Hello {{ customer_name or "there" }},</p>
<p>Reports for {{ report_types | join(", ") }} have been generated{% if attachments %} and are attached{% endif %}.</p>
{% if preview_html %}<div>{{ preview_html | safe }}</div>{% endif %}
<p style="color:#6b7280; font-size: 12px;">Job {{ job_id }}. This is an automated notification.</p>
</body></html>
""",
}

_SUBJECTS: Dict[str, str] = {
    "fi-notification": "FI Requests Detected - {types}",
    "fi-batch-notification": "FI Requests Summary - {types}",
    "report-ready": "Reports Ready - {types}",
}

_ENV = Environment(
    loader=DictLoader(_SOURCES),
    autoescape=select_autoescape(default=True, default_for_string=True),
)


def template_names() -> Tuple[str, ...]:
    return tuple(sorted(_SOURCES))


def ensure_template(name: Optional[str]) -> str:
    resolved = (name or DEFAULT_TEMPLATE).strip()
    if resolved not in _SOURCES:
        raise ValidationError(f"Unknown email template {resolved!r}; expected one of {', '.join(template_names())}.")
    return resolved


def build_subject(name: Optional[str], report_types: Iterable[str], custom_subject: Optional[str] = None) -> str:
    if custom_subject and custom_subject.strip():
        return custom_subject.strip()
    types = ", ".join(str(t).capitalize() for t in report_types) or "Reports"
    return _SUBJECTS[ensure_template(name)].format(types=types)


def render_email(name: Optional[str], context: Dict[str, Any]) -> str:
    ctx = {
        "customer_name": None,
        "report_types": [],
        "matches": [],
        "total_matches": 0,
        "processed_projects": 0,
        "preview_html": None,
        "attachments": [],
        "job_id": "",
    }
    ctx.update(context)
    try:
        template = _ENV.get_template(ensure_template(name))
    except TemplateNotFound:
        raise ValidationError(f"Unknown email template {name!r}.") from None
    return template.render(**ctx)
