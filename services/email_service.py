from __future__ import annotations

import logging
from html import escape
from typing import Optional, Tuple

import requests

from shared.config import get_app_base_url, get_email_settings, get_invitation_ttl_days

logger = logging.getLogger(__name__)


def _email_enabled(settings: dict) -> bool:
    return bool(settings.get("api_key"))


def build_invitation_url(token: str) -> str:
    return f"{get_app_base_url()}/invite/{token}"


def _build_invitation_email(
    *,
    organization_name: str,
    role_name: str,
    role_description: Optional[str],
    inviter_name: str,
    inviter_email: str,
    invite_link: str,
) -> Tuple[str, str, str]:
    ttl_days = get_invitation_ttl_days()
    subject = f"Invitation to join {organization_name} as {role_name}"
    description_block = ""
    if role_description:
        description_block = (
            f"<p style=\"margin:0 0 16px; color:#475569;\">{escape(role_description)}</p>"
        )

    html = f"""
<!doctype html>
<html lang=\"en\">
  <head>
    <meta charset=\"utf-8\" />
    <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\" />
    <title>{escape(subject)}</title>
  </head>
  <body style=\"margin:0; padding:0; background:#f3f4f6; font-family:Arial, sans-serif; color:#111827;\">
    <table width=\"100%\" cellpadding=\"0\" cellspacing=\"0\" style=\"padding:40px 12px;\">
      <tr>
        <td align=\"center\">
          <table width=\"100%\" cellpadding=\"0\" cellspacing=\"0\" style=\"max-width:600px; background:#ffffff; border-radius:8px; padding:40px;\">
            <tr>
              <td>
                <h1 style=\"margin:0 0 8px; font-size:26px; color:#111827;\">You have been invited to join {escape(organization_name)}</h1>
                <p style=\"margin:0 0 24px; color:#4b5563;\">{escape(inviter_name)} invited you to collaborate</p>
                <p style=\"margin:0 0 16px; color:#374151;\"><strong>{escape(inviter_name)}</strong> ({escape(inviter_email)}) invited you to join <strong>{escape(organization_name)}</strong> as <strong>{escape(role_name)}</strong>.</p>
                {description_block}
                <p style=\"margin:32px 0; text-align:center;\">
                  <a href=\"{escape(invite_link)}\" style=\"background:#2563eb; color:#ffffff; padding:16px 32px; border-radius:8px; text-decoration:none; font-weight:600; display:inline-block;\">Accept invitation</a>
                </p>
                <p style=\"margin:0 0 8px; font-size:14px; color:#4b5563;\">If the button does not work, copy this link into your browser:</p>
                <p style=\"margin:0 0 24px; font-size:14px; word-break:break-all;\"><a href=\"{escape(invite_link)}\" style=\"color:#2563eb;\">{escape(invite_link)}</a></p>
                <p style=\"margin:0; font-size:13px; color:#6b7280;\">This invitation expires in {ttl_days} days. If you were not expecting it, you can ignore this email.</p>
              </td>
            </tr>
          </table>
        </td>
      </tr>
    </table>
  </body>
</html>
"""

    text_lines = [
        "Hello!",
        "",
        f"{inviter_name} ({inviter_email}) invited you to join {organization_name} as {role_name}.",
    ]
    if role_description:
        text_lines.append(role_description)
    text_lines.extend([
        "",
        f"Accept the invitation: {invite_link}",
        "",
        f"This invitation expires in {ttl_days} days. If you were not expecting it, you can ignore this email.",
    ])
    return subject, html, "\n".join(text_lines)


def send_invitation_email(
    *,
    to_email: str,
    organization_name: str,
    role_name: str,
    role_description: Optional[str],
    inviter_name: str,
    inviter_email: str,
    token: str,
) -> bool:
    """Send the invitation through Resend. Returns False when email is disabled or the send fails."""
    if not to_email:
        return False
    settings = get_email_settings()
    if not _email_enabled(settings):
        logger.info("RESEND_API_KEY not configured; invitation email to %s not sent", to_email)
        return False

    subject, html, text = _build_invitation_email(
        organization_name=organization_name,
        role_name=role_name,
        role_description=role_description,
        inviter_name=inviter_name,
        inviter_email=inviter_email,
        invite_link=build_invitation_url(token),
    )
    payload = {
        "from": f"{settings['sender_name']} <{settings['sender_address']}>",
        "to": [to_email],
        "subject": subject,
        "html": html,
        "text": text,
    }
    try:
        resp = requests.post(
            settings["api_url"],
            headers={"Authorization": f"Bearer {settings['api_key']}", "Content-Type": "application/json"},
            json=payload,
            timeout=10,
        )
        if resp.status_code >= 300:
            logger.warning("Resend send failed: %s %s", resp.status_code, resp.text)
            return False
        return True
    except requests.RequestException as exc:
        logger.warning("Resend request failed: %s", exc)
        return False
