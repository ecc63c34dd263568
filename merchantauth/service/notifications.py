from __future__ import annotations

import asyncio
import re
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

import httpx

from merchantauth.logging import get_logger, mask_mobile, redact_email

logger = get_logger(__name__)


class NotificationError(Exception):
    """A code could not be handed to the delivery provider."""

    def __init__(self, channel: str, message: str) -> None:
        super().__init__(message)
        self.channel = channel
        self.message = message


class CodeChannel(Protocol):
    async def send_code(
        self, destination: str, code: str, display_name: Optional[str] = None
    ) -> None: ...


def sms_display_name(name: Optional[str]) -> str:
    """First ten letters of ``name``, upper-cased; ``User`` when nothing is left."""
    letters = re.sub(r"[^A-Za-z]", "", name or "")
    return letters[:10].upper() or "User"


class EmailChannel:
    """Delivers one-time codes by SMTP.

    Falls back to logging when SMTP is not configured (dev mode).
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
        from_name: str = "Merchant Support",
        otp_ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.otp_ttl_minutes = otp_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> None:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
            )
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            raise NotificationError("email", "Failed to send email") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                error=str(e),
            )
            raise NotificationError("email", "Failed to send email") from e
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise NotificationError("email", "Failed to send email") from e

        logger.info("email_sent", to=redact_email(to_email), subject=subject)

    def _render(self, code: str, display_name: Optional[str]) -> tuple[str, str, str]:
        greeting = f"Hello {display_name}," if display_name else "Hello,"
        subject = f"Your verification code for {self.from_name}"
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333333; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; font-weight: bold; letter-spacing: 8px; color: #007bff; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #999999; }}
    </style>
</head>
<body>
    <div class="container">
        <h2>OTP Verification</h2>
        <p>{greeting}</p>
        <p>Your one-time password is:</p>
        <p class="code">{code}</p>
        <p>This code is valid for {self.otp_ttl_minutes} minutes. Do not share it with anyone.</p>
        <p>If you did not request this code, please ignore this email or contact support.</p>
        <div class="footer"><p>{self.from_name}</p></div>
    </div>
</body>
</html>
"""
        text_body = f"""OTP Verification

{greeting}

Your one-time password is: {code}

This code is valid for {self.otp_ttl_minutes} minutes. Do not share it with anyone.

If you did not request this code, please ignore this email or contact support.

---
{self.from_name}
"""
        return subject, html_body, text_body

    async def send_code(
        self, destination: str, code: str, display_name: Optional[str] = None
    ) -> None:
        subject, html_body, text_body = self._render(code, display_name)
        await asyncio.to_thread(self._send_email, destination, subject, html_body, text_body)


class SmsChannel:
    """Delivers one-time codes through an HTTP SMS gateway (query-string API)."""

    def __init__(
        self,
        *,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        route: Optional[str] = None,
        sms_type: Optional[str] = None,
        template_id: Optional[str] = None,
        brand_name: str = "Merchant Support",
        timeout: float = 10.0,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.route = route
        self.sms_type = sms_type
        self.template_id = template_id
        self.brand_name = brand_name
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.api_url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    def _message(self, code: str, display_name: Optional[str]) -> str:
        return (
            f"Hi {sms_display_name(display_name)} your OTP for account verification on "
            f"{self.brand_name} is {code} Please do not share this OTP with anyone. "
            f"- Team {self.brand_name}"
        )

    async def send_code(
        self, destination: str, code: str, display_name: Optional[str] = None
    ) -> None:
        if not self.is_configured:
            logger.warning("sms_dev_mode", to=mask_mobile(destination))
            return

        params = {
            "key": self.api_key,
            "route": self.route or "",
            "type": self.sms_type or "",
            "sender": self.sender or "",
            "number": destination,
            "sms": self._message(code, display_name),
            "templateid": self.template_id or "",
        }
        try:
            client = await self._get_client()
            response = await client.get(self.api_url, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "sms_api_error",
                to=mask_mobile(destination),
                status_code=e.response.status_code,
                error=str(e),
            )
            raise NotificationError("sms", "Failed to send SMS") from e
        except httpx.TimeoutException as e:
            logger.error("sms_timeout", to=mask_mobile(destination), error=str(e))
            raise NotificationError("sms", "Failed to send SMS") from e
        except httpx.HTTPError as e:
            logger.error(
                "sms_send_failed",
                to=mask_mobile(destination),
                error_type=type(e).__name__,
                error=str(e),
            )
            raise NotificationError("sms", "Failed to send SMS") from e

        logger.info("sms_sent", to=mask_mobile(destination))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
