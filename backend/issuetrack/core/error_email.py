from __future__ import annotations

from dataclasses import dataclass
from html import escape
from textwrap import dedent

from .levels import ErrorLevel

LEVEL_EMOJI = {
    ErrorLevel.ERROR: "🚨",
    ErrorLevel.WARNING: "⚠️",
    ErrorLevel.INFO: "ℹ️",
    ErrorLevel.DEBUG: "🐛",
}

FOOTER = dedent(
    """
    This notification was sent because you're an admin user with error notifications enabled.
    You can manage notification settings in your admin dashboard.
    """
).strip()

LEVEL_COLOR = {
    ErrorLevel.ERROR: "#dc2626",
    ErrorLevel.WARNING: "#d97706",
    ErrorLevel.INFO: "#2563eb",
    ErrorLevel.DEBUG: "#7c3aed",
}


@dataclass
class RenderedEmail:
    subject: str
    text: str
    html: str


def issue_url(base_url: str, issue_id: str) -> str:
    return f"{base_url.rstrip('/')}/dashboard/admin/issues/{issue_id}"


def render_error_notification(
    *,
    issue_id: str,
    title: str,
    message: str,
    level: ErrorLevel | str,
    admin_name: str,
    base_url: str,
) -> RenderedEmail:
    level = ErrorLevel(level)
    label = level.value.capitalize()
    emoji = LEVEL_EMOJI[level]
    color = LEVEL_COLOR[level]
    link = issue_url(base_url, issue_id)

    subject = f"{emoji} New {label}: {title}"

    lines = [
        f"New {level.value.upper()} Alert",
        "",
        f"Hello {admin_name},",
        "",
        f"A new {level.value} has been detected in your application:",
        "",
        f"Title: {title}",
        f"Message: {message}",
        "",
        f"View issue details: {link}",
        "",
        FOOTER,
    ]
    text = "\n".join(lines)

    html = f"""<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8">
    <title>New {label} Alert</title>
  </head>
  <body style="font-family: Arial, sans-serif; line-height: 1.6; margin: 0; padding: 20px; background-color: #f5f5f5;">
    <div style="max-width: 600px; margin: 0 auto; background-color: white; border-radius: 8px;">
      <div style="background-color: {color}; color: white; padding: 20px; border-radius: 8px 8px 0 0;">
        <h1 style="margin: 0; font-size: 24px;">{emoji} New {label} Alert</h1>
      </div>
      <div style="padding: 20px;">
        <p style="margin-top: 0;">Hello {escape(admin_name)},</p>
        <p>A new {level.value} has been detected in your application:</p>
        <div style="background-color: #f8f9fa; border-left: 4px solid {color}; padding: 15px; margin: 20px 0;">
          <h3 style="margin: 0 0 10px 0; color: #333;">{escape(title)}</h3>
          <p style="margin: 0; color: #666; font-family: monospace; white-space: pre-wrap;">{escape(message)}</p>
        </div>
        <p>
          <a href="{escape(link, quote=True)}"
             style="background-color: {color}; color: white; padding: 12px 24px; text-decoration: none; border-radius: 6px; display: inline-block; font-weight: bold;">
            View Issue Details
          </a>
        </p>
        <hr style="border: none; border-top: 1px solid #eee; margin: 30px 0;">
        <p style="color: #666; font-size: 14px; margin-bottom: 0;">
          This notification was sent because you're an admin user with error notifications enabled.<br>
          You can manage notification settings in your admin dashboard.
        </p>
      </div>
    </div>
  </body>
</html>
"""
    return RenderedEmail(subject=subject, text=text, html=html)
