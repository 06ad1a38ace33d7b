from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from authkernel.logging import get_logger
from authkernel.service.errors import DispatchFailedError

logger = get_logger(__name__)


class VerificationDispatcher(Protocol):
    def dispatch_verification_code(
        self, recipient: str, code: str, expires_in_minutes: int
    ) -> None: ...


class ResetDispatcher(Protocol):
    def dispatch_password_reset(
        self, recipient: str, reset_url: str, expires_in_minutes: int
    ) -> None: ...


class EmailService:
    """Delivers verification codes and reset links.

    Sends over SMTP (STARTTLS or implicit TLS) when a host and sender are
    configured, otherwise writes the message to the log so local setups
    work without a mail server. Delivery failures raise DispatchFailedError.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "AuthKernel",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_address(address: str) -> str:
        if "@" not in address:
            return "redacted"
        local, domain = address.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send(self, to_address: str, subject: str, text_body: str, **dev_fields) -> None:
        if not self.is_configured:
            # Body holds the credential; dev_fields use keys the log redactor masks
            logger.info(
                "email_dev_mode",
                to=self._redact_address(to_address),
                subject=subject,
                body_length=len(text_body),
                **dev_fields,
            )
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_address
        msg.attach(MIMEText(text_body, "plain"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_address, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_address, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=self._redact_address(to_address),
                host=self.smtp_host,
                smtp_code=getattr(exc, "smtp_code", None),
            )
            raise DispatchFailedError(detail={"reason": "smtp_auth"}) from exc
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", to=self._redact_address(to_address))
            raise DispatchFailedError(detail={"reason": "recipient_refused"}) from exc
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=self._redact_address(to_address),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DispatchFailedError(detail={"reason": type(exc).__name__}) from exc

        logger.info("email_sent", to=self._redact_address(to_address), subject=subject)

    def dispatch_verification_code(
        self, recipient: str, code: str, expires_in_minutes: int
    ) -> None:
        subject = "Your verification code"
        text_body = f"""Confirm your email address

Your verification code is: {code}

The code expires in {expires_in_minutes} minutes. If you did not create an
account, you can ignore this message.
"""
        self._send(recipient, subject, text_body, code=code)

    def dispatch_password_reset(
        self, recipient: str, reset_url: str, expires_in_minutes: int
    ) -> None:
        subject = "Reset your password"
        text_body = f"""Reset your password

We received a request to reset your password. Visit the link below to choose
a new one:

{reset_url}

This link expires in {expires_in_minutes} minutes. If you did not request a
reset, you can ignore this message.
"""
        self._send(recipient, subject, text_body, reset_token_url=reset_url)
