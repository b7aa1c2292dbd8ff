import html
import os
import smtplib
from email.message import EmailMessage

import requests

EMAIL_OUTBOX: list[tuple[str, str, str]] = []
CHAT_OUTBOX: list[tuple[str, str]] = []

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"


def send_email(to_email: str, subject: str, message: str):
    if os.getenv("TESTING") == "1":
        EMAIL_OUTBOX.append((to_email, subject, message))
        return
    server = os.getenv("SMTP_SERVER")
    if not server:
        return
    from_addr = os.getenv("EMAIL_FROM", "servicedesk@example.com")
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_email
    msg.set_content(message)
    with smtplib.SMTP(server) as s:
        s.send_message(msg)


def send_staff_chat(message: str):
    """Post an HTML message to the staff Telegram chat when one is configured."""

    chat_id = os.getenv("TELEGRAM_CHAT_ID")
    if os.getenv("TESTING") == "1":
        CHAT_OUTBOX.append((chat_id or "", message))
        return
    token = os.getenv("TELEGRAM_BOT_TOKEN")
    if not token or not chat_id:
        return
    r = requests.post(
        TELEGRAM_API_URL.format(token=token),
        json={"chat_id": chat_id, "text": message, "parse_mode": "HTML"},
        timeout=10,
    )
    r.raise_for_status()


def format_case_message(heading: str, case_label: str, title: str, lines: list[str]) -> str:
    body = [f"<b>{html.escape(heading)}</b>", f"{html.escape(case_label)}: {html.escape(title)}"]
    body.extend(html.escape(line) for line in lines if line)
    return "\n".join(body)
