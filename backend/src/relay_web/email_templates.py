"""Built-in transactional email templates.

Templates use ``{{variable}}`` placeholders. Values are HTML-escaped unless the
caller passes the name in ``raw`` (used for fragments this module renders
itself). Unknown placeholders render as an empty string.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from datetime import date, datetime

VARIABLE_PATTERN = re.compile(r"\{\{(\w+)\}\}")

_LAYOUT = """<!DOCTYPE html>
<html>
  <body style="font-family: -apple-system, Segoe UI, Roboto, sans-serif; background-color: #f9fafb; padding: 24px;">
    <div style="max-width: 560px; margin: 0 auto; background-color: #ffffff; padding: 32px; border-radius: 8px;">
{{content}}
      <p style="font-size: 12px; color: #9ca3af; margin-top: 32px;">AgencyOS</p>
    </div>
  </body>
</html>
"""

_WELCOME = """      <p style="font-size: 24px; font-weight: bold;">Welcome to AgencyOS, {{first_name}}!</p>
      <p style="font-size: 16px; line-height: 24px;">{{company_line}}Your account has been set up and you're ready to start collaborating with our team.</p>
      <p style="font-size: 16px;">Here's what you can do next:</p>
      <ul style="font-size: 16px; line-height: 24px;">
        <li>View your active projects and milestones</li>
        <li>Track progress in real-time</li>
        <li>Communicate directly with your team</li>
        <li>Access all project files and deliverables</li>
      </ul>
      <a href="{{login_url}}" style="background-color: #3b82f6; color: #ffffff; padding: 12px 24px; border-radius: 6px; text-decoration: none; font-weight: bold;">Access Your Dashboard</a>
      <p style="font-size: 14px; color: #6b7280; margin-top: 32px;">Need help? Reply to this email or visit our <a href="{{support_url}}" style="color: #3b82f6;">support center</a></p>"""

_MILESTONE = """      <p style="font-size: 24px; font-weight: bold;">Milestone Complete!</p>
      <p style="font-size: 16px;">Hi {{client_name}},</p>
      <p style="font-size: 16px; line-height: 24px;">Great news! We've completed <strong>{{milestone_name}}</strong> for your <strong>{{service_name}}</strong> project.</p>
{{next_steps_block}}
      <a href="{{dashboard_url}}" style="background-color: #10b981; color: #ffffff; padding: 12px 24px; border-radius: 6px; text-decoration: none; font-weight: bold;">View Progress</a>
      <p style="font-size: 14px; color: #6b7280; margin-top: 32px;">Your team will reach out soon with next steps. Feel free to reply with any questions!</p>"""

_NEXT_STEPS = """      <p style="font-size: 18px; font-weight: bold;">What's Next:</p>
      <p style="font-size: 16px; line-height: 24px;">{{next_steps}}</p>"""

_TASK = """      <p style="font-size: 24px; font-weight: bold;">New Task Assigned</p>
      <p style="font-size: 16px;">Hi {{assignee_name}},</p>
      <p style="font-size: 16px;">You've been assigned a new task:</p>
      <div style="background-color: #f3f4f6; padding: 16px; border-radius: 6px; margin-bottom: 24px;">
        <p style="font-size: 18px; font-weight: bold;">{{task_title}}</p>
{{details_block}}
      </div>
      <a href="{{task_url}}" style="background-color: #3b82f6; color: #ffffff; padding: 12px 24px; border-radius: 6px; text-decoration: none; font-weight: bold;">View Task Details</a>"""

_PRIORITY_COLORS = {"low": "#10b981", "medium": "#f59e0b", "high": "#ef4444"}


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


def render_template(template: str, variables: dict[str, str | None], *, raw: frozenset[str] = frozenset()) -> str:
    def replace_var(match: re.Match) -> str:
        name = match.group(1)
        value = variables.get(name) or ""
        return value if name in raw else html.escape(value)

    return VARIABLE_PATTERN.sub(replace_var, template)


def _html_to_text(content: str) -> str:
    text = re.sub(r"<[^>]+>", " ", content)
    text = re.sub(r"\s+", " ", text).strip()
    return html.unescape(text)


def _wrap(subject: str, content: str) -> RenderedEmail:
    body = render_template(_LAYOUT, {"content": content}, raw=frozenset({"content"}))
    return RenderedEmail(subject=subject, html=body, text=_html_to_text(content))


def _format_due_date(value: str) -> str:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed_date = date.fromisoformat(value)
        except ValueError:
            return value
        return f"{parsed_date.month}/{parsed_date.day}/{parsed_date.year}"
    return f"{parsed.month}/{parsed.day}/{parsed.year}"


def welcome_email(*, first_name: str | None, company_name: str | None, login_url: str, support_url: str) -> RenderedEmail:
    name = first_name or ""
    company_line = f"We're excited to have {html.escape(company_name)} onboard! " if company_name else ""
    content = render_template(
        _WELCOME,
        {
            "first_name": name,
            "company_line": company_line,
            "login_url": login_url,
            "support_url": support_url,
        },
        raw=frozenset({"company_line"}),
    )
    return _wrap(f"Welcome to AgencyOS, {name}!", content)


def milestone_complete_email(
    *,
    client_name: str | None,
    milestone_name: str,
    service_name: str,
    next_steps: str | None,
    dashboard_url: str,
) -> RenderedEmail:
    next_steps_block = render_template(_NEXT_STEPS, {"next_steps": next_steps}) if next_steps else ""
    content = render_template(
        _MILESTONE,
        {
            "client_name": client_name,
            "milestone_name": milestone_name,
            "service_name": service_name,
            "next_steps_block": next_steps_block,
            "dashboard_url": dashboard_url,
        },
        raw=frozenset({"next_steps_block"}),
    )
    return _wrap(f"Milestone Completed: {milestone_name}", content)


def task_assigned_email(
    *,
    assignee_name: str | None,
    task_title: str,
    task_description: str | None,
    due_date: str | None,
    priority: str | None,
    service_name: str | None,
    task_url: str,
) -> RenderedEmail:
    details: list[str] = []
    if task_description:
        details.append(f'        <p style="font-size: 14px; color: #4b5563;">{html.escape(task_description)}</p>')
    if service_name:
        details.append(f"        <div><strong>Project:</strong> {html.escape(service_name)}</div>")
    if due_date:
        details.append(f"        <div><strong>Due:</strong> {html.escape(_format_due_date(due_date))}</div>")
    if priority:
        color = _PRIORITY_COLORS.get(priority, "#6b7280")
        details.append(
            f'        <div><strong>Priority:</strong> <span style="color: {color}; font-weight: bold;">'
            f"{html.escape(priority.upper())}</span></div>"
        )
    content = render_template(
        _TASK,
        {
            "assignee_name": assignee_name,
            "task_title": task_title,
            "details_block": "\n".join(details),
            "task_url": task_url,
        },
        raw=frozenset({"details_block"}),
    )
    return _wrap(f"New Task: {task_title}", content)
