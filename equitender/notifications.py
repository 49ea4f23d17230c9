"""
equitender/notifications.py

NotificationFanout: best-effort dispatch of in-app notifications and emails
triggered by lifecycle transitions.

Rules:
- Dispatch happens AFTER the transition has committed.
- A failing notice is logged and dropped. It never fails or rolls back the
  transition, and is not retried inline.
- Each notice is independent: one failing email does not stop the others.

The state machines only build notices (OrganizationNotice / UserNotice /
EmailNotice). Delivery is the fanout's job; the default implementation writes
Notification rows and sends mail through the configured EmailSender.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass, field
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from flask import current_app

from .errors import ExternalDependencyFailure, NotFound
from .extensions import db
from .models import Notification, NotificationType, Organization, OrganizationMember, Role, User
from .utils import utcnow

logger = logging.getLogger(__name__)

_FANOUT_KEY = "equitender.fanout"


# ---------------------------------------------------------------------
# Notices (intents produced by transitions)
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class Notice:
    type: str
    title: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.type not in NotificationType.ALL:
            raise ValueError(f"Unknown notification type: {self.type}")


@dataclass(frozen=True)
class OrganizationNotice:
    organization_id: int
    exclude_user_id: Optional[int]
    notice: Notice


@dataclass(frozen=True)
class UserNotice:
    user_id: int
    organization_id: Optional[int]
    notice: Notice


@dataclass(frozen=True)
class EmailNotice:
    organization_id: int
    subject: str
    body: str
    roles: Sequence[str] = (Role.OWNER, Role.ADMIN)


Intent = Union[OrganizationNotice, UserNotice, EmailNotice]


# ---------------------------------------------------------------------
# Email senders
# ---------------------------------------------------------------------
class EmailSender:
    """Interface: deliver one message to a list of addresses."""

    def send(self, to: List[str], subject: str, body: str) -> None:
        raise NotImplementedError


class LogEmailSender(EmailSender):
    """Development/test sender: writes the message to the log."""

    def __init__(self):
        self.outbox: List[Dict[str, Any]] = []

    def send(self, to: List[str], subject: str, body: str) -> None:
        self.outbox.append({"to": list(to), "subject": subject, "body": body})
        logger.info("Email to %s: %s", ", ".join(to), subject)


class SmtpEmailSender(EmailSender):
    """Plain-text SMTP delivery (STARTTLS when configured)."""

    def __init__(self, host: str, port: int, username: str, password: str, sender: str, use_tls: bool = True):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.use_tls = use_tls

    def send(self, to: List[str], subject: str, body: str) -> None:
        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = formataddr((current_app.config.get("APP_NAME", "Equitender"), self.sender))
        msg["To"] = ", ".join(to)
        msg["Date"] = formatdate(localtime=False)
        msg["Message-ID"] = make_msgid()

        try:
            with smtplib.SMTP(self.host, self.port, timeout=30) as server:
                if self.use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self.username:
                    server.login(self.username, self.password)
                server.sendmail(self.sender, to, msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            raise ExternalDependencyFailure(f"SMTP delivery failed: {exc}") from exc


def build_email_sender(config: Dict[str, Any]) -> EmailSender:
    backend = (config.get("MAIL_BACKEND") or "log").lower()
    if backend == "smtp":
        return SmtpEmailSender(
            host=config["SMTP_HOST"],
            port=int(config["SMTP_PORT"]),
            username=config.get("SMTP_USERNAME", ""),
            password=config.get("SMTP_PASSWORD", ""),
            sender=config["MAIL_DEFAULT_SENDER"],
            use_tls=bool(config.get("SMTP_USE_TLS", True)),
        )
    return LogEmailSender()


# ---------------------------------------------------------------------
# Fanout
# ---------------------------------------------------------------------
class NotificationFanout:
    """
    Default fanout: in-app Notification rows + email.

    Each delivery commits on its own; failures roll back only that delivery.
    """

    def __init__(self, email_sender: Optional[EmailSender] = None):
        self.email_sender = email_sender or LogEmailSender()

    # -- collaborator interface ------------------------------------------------
    def notify_organization(self, organization_id: int, exclude_user_id: Optional[int], notice: Notice) -> int:
        """Notify every member of an organization except exclude_user_id. Returns rows written."""
        members = OrganizationMember.query.filter_by(organization_id=organization_id).all()
        count = 0
        for member in members:
            if exclude_user_id is not None and member.user_id == exclude_user_id:
                continue
            db.session.add(self._row(member.user_id, organization_id, notice))
            count += 1
        self._commit()
        return count

    def notify_user(self, user_id: int, notice: Notice, organization_id: Optional[int] = None) -> None:
        db.session.add(self._row(user_id, organization_id, notice))
        self._commit()

    def send_email(self, organization_id: int, subject: str, body: str, roles: Iterable[str] = (Role.OWNER, Role.ADMIN)) -> None:
        recipients = organization_emails(organization_id, roles)
        if not recipients:
            logger.info("No email recipients for organization %s (%s)", organization_id, subject)
            return
        try:
            self.email_sender.send(recipients, subject, body)
        except ExternalDependencyFailure:
            raise
        except Exception as exc:
            raise ExternalDependencyFailure(f"Email delivery failed: {exc}") from exc

    # -- effect execution ------------------------------------------------------
    def deliver(self, intent: Intent) -> None:
        if isinstance(intent, OrganizationNotice):
            self.notify_organization(intent.organization_id, intent.exclude_user_id, intent.notice)
        elif isinstance(intent, UserNotice):
            self.notify_user(intent.user_id, intent.notice, organization_id=intent.organization_id)
        elif isinstance(intent, EmailNotice):
            self.send_email(intent.organization_id, intent.subject, intent.body, roles=intent.roles)
        else:
            raise TypeError(f"Unsupported intent: {intent!r}")

    def dispatch(self, intents: Iterable[Intent]) -> List[Intent]:
        """Deliver every intent independently. Returns the intents that failed."""
        failed: List[Intent] = []
        for intent in intents:
            try:
                self.deliver(intent)
            except Exception:
                db.session.rollback()
                failed.append(intent)
                logger.exception("Notification dispatch failed (%s)", type(intent).__name__)
        return failed

    # -- helpers ---------------------------------------------------------------
    @staticmethod
    def _row(user_id: int, organization_id: Optional[int], notice: Notice) -> Notification:
        return Notification(
            user_id=user_id,
            organization_id=organization_id,
            type=notice.type,
            title=notice.title,
            message=notice.message,
            details=dict(notice.metadata),
        )

    @staticmethod
    def _commit() -> None:
        try:
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            raise ExternalDependencyFailure(f"Notification write failed: {exc}") from exc


def organization_emails(organization_id: int, roles: Iterable[str]) -> List[str]:
    """Member emails with the given roles, falling back to the organization's own email."""
    roles = tuple(roles)
    rows = (
        db.session.query(User.email)
        .join(OrganizationMember, OrganizationMember.user_id == User.id)
        .filter(OrganizationMember.organization_id == organization_id, OrganizationMember.role.in_(roles))
        .all()
    )
    emails = sorted({email for (email,) in rows if email})
    if not emails:
        org = db.session.get(Organization, organization_id)
        if org and org.email:
            emails = [org.email]
    return emails


def init_fanout(app, fanout: Optional[NotificationFanout] = None) -> NotificationFanout:
    fanout = fanout or NotificationFanout(build_email_sender(app.config))
    app.extensions[_FANOUT_KEY] = fanout
    return fanout


def get_fanout() -> NotificationFanout:
    return current_app.extensions[_FANOUT_KEY]


# ---------------------------------------------------------------------
# Read side (in-app inbox)
# ---------------------------------------------------------------------
def serialize_notification(n: Notification) -> Dict[str, Any]:
    return {
        "id": n.id,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "metadata": n.details or {},
        "read": n.read,
        "created_at": n.created_at.isoformat() if n.created_at else None,
    }


def list_for_user(user_id: int, *, unread_only: bool = False, limit: int = 100) -> List[Notification]:
    query = Notification.query.filter_by(user_id=user_id)
    if unread_only:
        query = query.filter_by(read=False)
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def mark_read(user_id: int, notification_id: int) -> Notification:
    n = Notification.query.filter_by(id=notification_id, user_id=user_id).first()
    if n is None:
        raise NotFound("Notification not found.")
    if not n.read:
        n.read = True
        n.read_at = utcnow()
        db.session.commit()
    return n


def mark_all_read(user_id: int) -> int:
    count = Notification.query.filter_by(user_id=user_id, read=False).update(
        {"read": True, "read_at": utcnow()},
        synchronize_session=False,
    )
    db.session.commit()
    return count
