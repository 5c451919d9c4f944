from __future__ import annotations

import logging
import smtplib
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Literal, Protocol

logger = logging.getLogger(__name__)

EmailResultStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class EmailMessageRequest:
    to: str
    subject: str
    text_body: str
    html_body: str


@dataclass(frozen=True)
class EmailSendResult:
    status: EmailResultStatus
    attempted_at: datetime
    message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    retryable: bool = False


class EmailSender(Protocol):
    def send(self, message: EmailMessageRequest) -> EmailSendResult: ...


class StubEmailSender:
    """Records messages in memory; addresses containing "fail" or "bounce" force failures."""

    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self.sent: list[EmailMessageRequest] = []

    def send(self, message: EmailMessageRequest) -> EmailSendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return EmailSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="email_disabled",
                error_message="Live email delivery is disabled",
                retryable=True,
            )

        target = message.to.lower()
        if "bounce" in target:
            return EmailSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_recipient_rejected",
                error_message="Stub sender rejected the recipient address",
                retryable=False,
            )
        if "fail" in target:
            return EmailSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced a transient failure",
                retryable=True,
            )

        self.sent.append(message)
        message_id = f"stub-{len(self.sent)}-{int(attempted_at.timestamp())}"
        return EmailSendResult(status="sent", attempted_at=attempted_at, message_id=message_id)


class _SmtpSendError(Exception):
    """Internal error raised when an SMTP exchange fails."""

    def __init__(self, error_code: str, message: str, *, retryable: bool) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.retryable = retryable


class SmtpEmailSender:
    """Delivers reminder emails through an SMTP relay (STARTTLS or implicit TLS on 465)."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str,
        password: str,
        from_address: str,
        timeout_seconds: int = 30,
    ) -> None:
        stripped_host = host.strip()
        if not stripped_host:
            raise ValueError("host must not be empty")
        self._host = stripped_host
        self._port = port
        self._username = username.strip()
        self._password = password
        self._from_address = from_address
        self._timeout_seconds = timeout_seconds

    def send(self, message: EmailMessageRequest) -> EmailSendResult:
        attempted_at = datetime.now(timezone.utc)
        email = EmailMessage()
        email["From"] = self._from_address
        email["To"] = message.to
        email["Subject"] = message.subject
        email["Message-ID"] = make_msgid(domain=self._host)
        email.set_content(message.text_body)
        email.add_alternative(message.html_body, subtype="html")

        try:
            self._deliver(email)
        except _SmtpSendError as exc:
            logger.warning(
                "email delivery to %s failed: %s (%s)",
                mask_email(message.to),
                exc.message,
                exc.error_code,
            )
            return EmailSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_email(message.to)})",
                retryable=exc.retryable,
            )

        logger.info("email sent to %s: %s", mask_email(message.to), email["Message-ID"])
        return EmailSendResult(status="sent", attempted_at=attempted_at, message_id=email["Message-ID"])

    def _deliver(self, email: EmailMessage) -> None:
        try:
            if self._port == 465:
                client = smtplib.SMTP_SSL(self._host, self._port, timeout=self._timeout_seconds)
            else:
                client = smtplib.SMTP(self._host, self._port, timeout=self._timeout_seconds)
            with client:
                if self._port != 465:
                    client.starttls()
                if self._username:
                    client.login(self._username, self._password)
                client.send_message(email)
        except smtplib.SMTPRecipientsRefused as exc:
            codes = [code for code, _ in exc.recipients.values()]
            # 4xx refusals such as greylisting clear up on a later attempt
            retryable = bool(codes) and all(400 <= code < 500 for code in codes)
            raise _SmtpSendError(
                "recipient_deferred" if retryable else "recipient_refused",
                f"Recipient refused: {codes}",
                retryable=retryable,
            ) from exc
        except smtplib.SMTPSenderRefused as exc:
            raise _SmtpSendError("sender_refused", f"Sender refused: {exc.smtp_code}", retryable=False) from exc
        except smtplib.SMTPAuthenticationError as exc:
            raise _SmtpSendError("auth_failed", f"SMTP authentication failed: {exc.smtp_code}", retryable=False) from exc
        except smtplib.SMTPResponseException as exc:
            raise _SmtpSendError(
                f"smtp_{exc.smtp_code}",
                f"SMTP {exc.smtp_code}: {exc.smtp_error!r}",
                retryable=400 <= exc.smtp_code < 500,
            ) from exc
        except smtplib.SMTPServerDisconnected as exc:
            raise _SmtpSendError("disconnected", f"Server disconnected: {exc}", retryable=True) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _SmtpSendError("timeout", f"Request timed out: {exc}", retryable=True) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise _SmtpSendError("connection_error", f"Connection error: {exc}", retryable=True) from exc


def mask_email(address: str) -> str:
    normalized = address.strip()
    if not normalized:
        return "***"
    if "@" not in normalized:
        if len(normalized) <= 4:
            return "*" * len(normalized)
        return f"{normalized[:2]}***{normalized[-2:]}"
    local, domain = normalized.split("@", 1)
    if len(local) <= 1:
        return f"*@{domain}"
    return f"{local[0]}***@{domain}"
