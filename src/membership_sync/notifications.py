"""membership_sync.notifications

Outbound email for the registration job.

SmtpMailer sends multipart (plain text + HTML) messages through
aiosmtplib. From the job's point of view a send is a blocking call that
either returns or raises NotificationError; the caller decides whether
to swallow it.

Configuration (via environment variables):
- SMTP_HOST: SMTP server hostname
- SMTP_PORT: SMTP server port (default: 587)
- SMTP_USERNAME: SMTP authentication username
- SMTP_PASSWORD: SMTP authentication password
- SMTP_USE_TLS: Use STARTTLS (default: true)
- SMTP_FROM_EMAIL: Sender email address
- SMTP_FROM_NAME: Sender display name
"""

from __future__ import annotations

import asyncio
import html
import logging
import os
import textwrap
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Mapping, Protocol

import aiosmtplib

from membership_sync.duplicates import MATCH_PHONE
from membership_sync.member_record import MemberRecord
from membership_sync.normalize import normalize_email
from membership_sync.shared import ConfigurationError, NotificationError

log = logging.getLogger(__name__)

DEFAULT_FROM_NAME = "Membership Office"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class SmtpConfig:
    host: str
    username: str
    password: str = ""
    from_email: str = ""
    port: int = 587
    from_name: str = DEFAULT_FROM_NAME
    use_tls: bool = True
    timeout: float = 30.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "SmtpConfig":
        host = environ.get("SMTP_HOST")
        username = environ.get("SMTP_USERNAME")
        password = environ.get("SMTP_PASSWORD")
        from_email = environ.get("SMTP_FROM_EMAIL") or username
        if not all([host, username, password, from_email]):
            raise ConfigurationError(
                "SMTP_HOST, SMTP_USERNAME, SMTP_PASSWORD and SMTP_FROM_EMAIL must be set"
            )
        return cls(
            host=host,
            port=int(environ.get("SMTP_PORT", "587")),
            username=username,
            password=password,
            from_email=from_email,
            from_name=environ.get("SMTP_FROM_NAME", DEFAULT_FROM_NAME),
            use_tls=environ.get("SMTP_USE_TLS", "true").lower() == "true",
        )


# ---------------------------------------------------------------------------
# Mailer
# ---------------------------------------------------------------------------

class Notifier(Protocol):
    def send(
        self,
        to_email: str,
        subject: str,
        body_text: str,
        body_html: str | None = None,
        cc_email: str | None = None,
    ) -> None:
        ...


class SmtpMailer:
    def __init__(self, config: SmtpConfig) -> None:
        self.config = config

    def build_message(
        self,
        to_email: str,
        subject: str,
        body_text: str,
        body_html: str | None = None,
        cc_email: str | None = None,
    ) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["From"] = f"{self.config.from_name} <{self.config.from_email}>"
        message["To"] = to_email
        if cc_email:
            message["Cc"] = cc_email
        message["Subject"] = subject
        message.attach(MIMEText(body_text, "plain", "utf-8"))
        if body_html:
            message.attach(MIMEText(body_html, "html", "utf-8"))
        return message

    def send(
        self,
        to_email: str,
        subject: str,
        body_text: str,
        body_html: str | None = None,
        cc_email: str | None = None,
    ) -> None:
        message = self.build_message(to_email, subject, body_text, body_html, cc_email)
        try:
            asyncio.run(
                aiosmtplib.send(
                    message,
                    hostname=self.config.host,
                    port=self.config.port,
                    username=self.config.username,
                    password=self.config.password,
                    start_tls=self.config.use_tls,
                    timeout=self.config.timeout,
                )
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            log.error("Failed to send email to %s: %s", to_email, exc)
            raise NotificationError(f"send to {to_email} failed: {exc}") from exc
        log.info("Email sent to %s: %s", to_email, subject)


# ---------------------------------------------------------------------------
# Message builders
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OutboundMessage:
    to_email: str
    subject: str
    body_text: str
    body_html: str
    cc_email: str | None = None


def _html_page(title: str, paragraphs: list[str], details: list[tuple[str, str]]) -> str:
    rows = "\n".join(
        f"<tr><th align=\"left\">{html.escape(label)}</th>"
        f"<td>{html.escape(value)}</td></tr>"
        for label, value in details
    )
    body = "\n".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
    table = f"<table cellpadding=\"4\">\n{rows}\n</table>" if details else ""
    return (
        "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\"></head>"
        "<body style=\"font-family: Arial, sans-serif; color: #333;\">\n"
        f"<h2>{html.escape(title)}</h2>\n{body}\n{table}\n"
        "</body></html>"
    )


def welcome_message(record: MemberRecord, temporary_password: str) -> OutboundMessage:
    subject = "Welcome - your membership account details"
    details = [
        ("Membership number", record.membership_number or ""),
        ("Name", record.latin_name or ""),
        ("Email", record.email or ""),
        ("Temporary password", temporary_password),
    ]
    intro = "Your membership account has been created."
    outro = [
        "Please sign in and change your password as soon as possible.",
        "The same credentials also work on the learning platform.",
    ]
    text = textwrap.dedent(
        f"""\
        Welcome {record.latin_name}!

        {intro}

        """
    )
    text += "\n".join(f"{label}: {value}" for label, value in details)
    text += "\n\n" + "\n".join(outro) + "\n"
    return OutboundMessage(
        to_email=record.email or "",
        subject=subject,
        body_text=text,
        body_html=_html_page(
            f"Welcome, {record.latin_name}", [intro, *outro], details
        ),
    )


def duplicate_message(
    candidate: MemberRecord,
    existing: MemberRecord,
    matched_by: str,
) -> OutboundMessage:
    """Notice to the applicant that a registration already exists.

    The existing member's address is copied in only when the match was by
    phone and the two emails differ.
    """
    cc = None
    if matched_by == MATCH_PHONE:
        candidate_email = normalize_email(candidate.email)
        existing_email = normalize_email(existing.email)
        if existing_email and existing_email != candidate_email:
            cc = existing.email
    key = "email address" if matched_by != MATCH_PHONE else "phone number"
    paragraphs = [
        f"Dear {candidate.latin_name or candidate.email},",
        f"We received your registration, but a member with the same {key} is already registered.",
        "If you have lost your login details, use the password reset page. "
        "If you believe this is a mistake, reply to this email.",
    ]
    details = []
    if existing.membership_number:
        details.append(("Existing membership number", existing.membership_number))
    text = "\n\n".join(paragraphs)
    if details:
        text += "\n\n" + "\n".join(f"{label}: {value}" for label, value in details)
    return OutboundMessage(
        to_email=candidate.email or "",
        subject="Your registration is already on file",
        body_text=text + "\n",
        body_html=_html_page("Registration already on file", paragraphs, details),
        cc_email=cc,
    )


def deliver(notifier: Notifier, message: OutboundMessage) -> None:
    notifier.send(
        message.to_email,
        message.subject,
        message.body_text,
        body_html=message.body_html,
        cc_email=message.cc_email,
    )
