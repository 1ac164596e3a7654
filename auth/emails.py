"""
auth/emails.py -- Transactional email templates.

Templates are Jinja2 with autoescaping on, so a display name such as
"<script>" is rendered inert in the HTML part. Each render_* function returns
a RenderedEmail with a subject plus HTML and plain-text bodies; the text part
is what dev-mode logging previews.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass

from jinja2 import DictLoader, Environment, StrictUndefined, select_autoescape

_LAYOUT = """\
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body>
  <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    {% block content %}{% endblock %}
    <hr style="border: none; border-top: 1px solid #eee; margin: 30px 0;">
    <p style="color: #666; font-size: 12px;">
      This email was sent by {{ brand }}. Please do not reply to this email.
    </p>
  </div>
</body>
</html>
"""

_BUTTON = """\
{% macro button(url, label) %}
<div style="text-align: center; margin: 30px 0;">
  <a href="{{ url }}" style="background-color: #4F46E5; color: white; padding: 12px 30px; text-decoration: none; border-radius: 5px; display: inline-block;">{{ label }}</a>
</div>
<p style="color: #666; font-size: 12px;">If the button doesn't work, copy and paste this URL: {{ url }}</p>
{% endmacro %}
"""

_TEMPLATES = {
    "layout.html": _LAYOUT,
    "macros.html": _BUTTON,
    "verify_email.html": """\
{% extends "layout.html" %}{% from "macros.html" import button %}
{% block content %}
<h1 style="color: #333;">Welcome to {{ brand }}!</h1>
<p>Hello {{ name or "there" }},</p>
<p>Thank you for signing up. Please verify your email address by clicking the button below:</p>
{{ button(url, "Verify Email") }}
<p>This link will expire in {{ expires_in }}.</p>
<p>If you didn't create an account, you can safely ignore this email.</p>
{% endblock %}
""",
    "verify_email.txt": """\
Welcome to {{ brand }}!

Please verify your email by visiting: {{ url }}

This link will expire in {{ expires_in }}.

If you didn't create an account, you can safely ignore this email.
""",
    "reset_password.html": """\
{% extends "layout.html" %}{% from "macros.html" import button %}
{% block content %}
<h1 style="color: #333;">Password Reset Request</h1>
<p>Hello {{ name or "there" }},</p>
<p>We received a request to reset your password. Click the button below to create a new password:</p>
{{ button(url, "Reset Password") }}
<p>This link will expire in {{ expires_in }}.</p>
<p>If you didn't request this, you can safely ignore this email.</p>
{% endblock %}
""",
    "reset_password.txt": """\
Reset your password by visiting: {{ url }}

This link will expire in {{ expires_in }}.

If you didn't request this, you can safely ignore this email.
""",
    "password_changed.html": """\
{% extends "layout.html" %}
{% block content %}
<h1 style="color: #333;">Password Changed</h1>
<p>Hello {{ name or "there" }},</p>
<p>Your password has been successfully changed.</p>
<p>If you didn't make this change, please contact our support team immediately.</p>
{% endblock %}
""",
    "password_changed.txt": """\
Hello {{ name or "there" }},

Your password has been successfully changed.

If you didn't make this change, please contact our support team immediately.
""",
}

_env = Environment(
    loader=DictLoader(_TEMPLATES),
    autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


def humanize_seconds(seconds: int) -> str:
    """3600 -> "1 hour", 86400 -> "24 hours", 900 -> "15 minutes"."""
    if seconds % 3600 == 0:
        hours = seconds // 3600
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    minutes = max(1, seconds // 60)
    return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"


def _render(template: str, subject: str, **context) -> RenderedEmail:
    return RenderedEmail(
        subject=subject,
        html=_env.get_template(f"{template}.html").render(**context),
        text=_env.get_template(f"{template}.txt").render(**context),
    )


def render_verification_email(brand: str, name: str | None, url: str, expires_in_seconds: int) -> RenderedEmail:
    return _render(
        "verify_email",
        f"Verify Your Email - {brand}",
        brand=brand,
        name=name,
        url=url,
        expires_in=humanize_seconds(expires_in_seconds),
    )


def render_password_reset_email(brand: str, name: str | None, url: str, expires_in_seconds: int) -> RenderedEmail:
    return _render(
        "reset_password",
        f"Reset Your Password - {brand}",
        brand=brand,
        name=name,
        url=url,
        expires_in=humanize_seconds(expires_in_seconds),
    )


def render_password_changed_email(brand: str, name: str | None) -> RenderedEmail:
    return _render("password_changed", "Your Password Has Been Changed", brand=brand, name=name)
