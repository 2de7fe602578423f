from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from html import escape
from typing import Any, Mapping
import logging
import smtplib

logger = logging.getLogger(__name__)

APP_NAME = "QueueForRoom"


@dataclass(frozen=True)
class SmtpSettings:
    host: str = "localhost"
    port: int = 587
    username: str | None = None
    password: str | None = None
    sender: str = "noreply@queueforroom.local"
    use_tls: bool = True
    enabled: bool = False
    timeout: float = 10.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "SmtpSettings":
        return cls(
            host=str(config.get("SMTP_HOST", cls.host)),
            port=int(config.get("SMTP_PORT", cls.port)),
            username=config.get("SMTP_USERNAME") or None,
            password=config.get("SMTP_PASSWORD") or None,
            sender=str(config.get("MAIL_FROM", cls.sender)),
            use_tls=_as_bool(config.get("SMTP_USE_TLS", cls.use_tls)),
            enabled=_as_bool(config.get("MAIL_ENABLED", cls.enabled)),
        )


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def format_interval(start: datetime, end: datetime) -> tuple[str, str]:
    """Return (date, time range) strings for email bodies."""
    if start.date() == end.date():
        return start.strftime("%Y-%m-%d"), f"{start:%H:%M} - {end:%H:%M}"
    return f"{start:%Y-%m-%d} - {end:%Y-%m-%d}", f"{start:%Y-%m-%d %H:%M} - {end:%Y-%m-%d %H:%M}"


class Mailer:
    """Builds the application's emails; subclasses decide how a message is delivered."""

    def deliver(self, to: str, subject: str, text: str, html: str | None = None) -> bool:
        raise NotImplementedError

    def _reservation_email(
        self,
        to: str,
        user_name: str,
        subject: str,
        intro: str,
        room_name: str,
        start: datetime,
        end: datetime,
        purpose: str | None = None,
        share_url: str | None = None,
    ) -> bool:
        date_text, time_text = format_interval(start, end)
        lines = [f"Hello {user_name},", "", intro, "", f"Room: {room_name}", f"Date: {date_text}", f"Time: {time_text}"]
        if purpose:
            lines.append(f"Purpose: {purpose}")
        if share_url:
            lines.extend(["", f"Share this reservation: {share_url}"])
        lines.extend(["", f"The {APP_NAME} Team"])

        details = [
            f"<p><strong>Room:</strong> {escape(room_name)}</p>",
            f"<p><strong>Date:</strong> {escape(date_text)}</p>",
            f"<p><strong>Time:</strong> {escape(time_text)}</p>",
        ]
        if purpose:
            details.append(f"<p><strong>Purpose:</strong> {escape(purpose)}</p>")
        if share_url:
            details.append(f'<p><a href="{escape(share_url)}">Share this reservation</a></p>')
        html = (
            '<html><body style="font-family: Arial, sans-serif; color:#333;">'
            f"<h2>{escape(subject)}</h2>"
            f"<p>Hello {escape(user_name)},</p><p>{escape(intro)}</p>"
            '<div style="background:#f8f8f8; padding:15px; border-radius:8px;">'
            + "".join(details)
            + "</div>"
            f'<p style="font-size:14px; color:#777;">The {APP_NAME} Team</p>'
            "</body></html>"
        )
        return self.deliver(to, f"{APP_NAME}: {subject}", "\n".join(lines), html)

    def send_reservation_confirmation(
        self,
        to: str,
        user_name: str,
        room_name: str,
        start: datetime,
        end: datetime,
        purpose: str | None = None,
        share_url: str | None = None,
    ) -> bool:
        return self._reservation_email(
            to,
            user_name,
            "Reservation Confirmed",
            "Your room reservation has been confirmed:",
            room_name,
            start,
            end,
            purpose,
            share_url,
        )

    def send_reservation_cancelled(
        self,
        to: str,
        user_name: str,
        room_name: str,
        start: datetime,
        end: datetime,
        purpose: str | None = None,
    ) -> bool:
        return self._reservation_email(
            to, user_name, "Reservation Cancelled", "Your reservation has been cancelled:", room_name, start, end, purpose
        )

    def send_reservation_overridden(
        self,
        to: str,
        user_name: str,
        room_name: str,
        start: datetime,
        end: datetime,
        purpose: str | None = None,
    ) -> bool:
        return self._reservation_email(
            to,
            user_name,
            "Reservation Overridden",
            "Your reservation has been overridden by a privileged instructor:",
            room_name,
            start,
            end,
            purpose,
        )

    def send_request_approved(
        self,
        to: str,
        user_name: str,
        room_name: str,
        start: datetime,
        end: datetime,
        purpose: str | None = None,
        share_url: str | None = None,
    ) -> bool:
        return self._reservation_email(
            to,
            user_name,
            "Reservation Request Approved",
            "Your reservation request has been approved:",
            room_name,
            start,
            end,
            purpose,
            share_url,
        )

    def send_request_rejected(self, to: str, user_name: str, review_note: str) -> bool:
        text = (
            f"Hello {user_name},\n\nYour reservation request has been rejected.\n"
            f"Reason: {review_note}\n\nThe {APP_NAME} Team"
        )
        return self.deliver(to, f"{APP_NAME}: Reservation Request Rejected", text)

    def send_reservation_updated(
        self,
        to: str,
        user_name: str,
        room_name: str,
        start: datetime,
        end: datetime,
        purpose: str | None = None,
    ) -> bool:
        return self._reservation_email(
            to, user_name, "Reservation Updated", "Your reservation has been updated:", room_name, start, end, purpose
        )

    def send_reservation_invite(
        self,
        to: str,
        owner_name: str,
        invitee_name: str,
        room_name: str,
        start: datetime,
        end: datetime,
        purpose: str | None = None,
        share_url: str | None = None,
    ) -> bool:
        return self._reservation_email(
            to,
            invitee_name,
            "Reservation Invitation",
            f"{owner_name} invited you to a room reservation:",
            room_name,
            start,
            end,
            purpose,
            share_url,
        )

    def send_permission_granted(self, to: str, user_name: str) -> bool:
        text = (
            f"Hello {user_name},\n\nYou have been granted a new permission: Override Reservations.\n"
            "Your bookings may now replace reservations of standard instructors.\n\n"
            f"The {APP_NAME} Team"
        )
        return self.deliver(to, f"{APP_NAME}: New Permission", text)

    def send_two_factor_code(self, to: str, code: str) -> bool:
        text = (
            f"Your verification code is: {code}\n\nThis code will expire in 10 minutes.\n"
            "If you did not try to sign in, please change your password.\n\n"
            f"The {APP_NAME} Team"
        )
        return self.deliver(to, f"{APP_NAME}: Your Verification Code", text)


class SmtpMailer(Mailer):
    def __init__(self, settings: SmtpSettings) -> None:
        self.settings = settings

    def deliver(self, to: str, subject: str, text: str, html: str | None = None) -> bool:
        if not self.settings.enabled:
            logger.info("Email delivery disabled; skipped %r to %s", subject, to)
            return False

        msg = EmailMessage()
        msg["From"] = self.settings.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(text)
        if html:
            msg.add_alternative(html, subtype="html")

        try:
            with smtplib.SMTP(self.settings.host, self.settings.port, timeout=self.settings.timeout) as smtp:
                if self.settings.use_tls:
                    smtp.starttls()
                if self.settings.username:
                    smtp.login(self.settings.username, self.settings.password or "")
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as error:
            logger.warning("Email sending failed for %s: %s", to, error)
            return False
        return True
