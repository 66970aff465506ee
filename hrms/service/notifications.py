"""Out-of-band OTP delivery.

One sender per channel behind a common ``send_otp`` capability; the
gateway picks the sender from a fixed channel mapping and turns any
failure into a user-visible ``DeliveryError``.
"""

from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Mapping, Optional, Protocol

import httpx

from hrms.logging import get_logger
from hrms.service.errors import DeliveryError
from hrms.storage.models import OtpChannel

logger = get_logger(__name__)


def _redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _redact_phone(phone: str) -> str:
    return f"***{phone[-4:]}" if len(phone) > 4 else "***"


class OtpSender(Protocol):
    channel: OtpChannel

    async def send_otp(self, recipient: str, code: str) -> bool: ...


class EmailOtpSender:
    """Sends OTP codes over SMTP; logs instead of sending when unconfigured."""

    channel = OtpChannel.EMAIL

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "HRMS Support",
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

    def _build_message(self, to_email: str, code: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = "Your verification code"
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        text_body = (
            f"Your verification code is {code}.\n\n"
            "It expires shortly. If you did not request it, ignore this email.\n"
        )
        html_body = (
            "<p>Your verification code is</p>"
            f"<p style=\"font-size:24px;letter-spacing:4px\"><strong>{code}</strong></p>"
            "<p>It expires shortly. If you did not request it, ignore this email.</p>"
        )
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _send(self, to_email: str, code: str) -> bool:
        if not self.is_configured:
            # Dev mode: nothing to send through
            logger.info("otp_email_dev_mode", to=_redact_email(to_email))
            return True
        msg = self._build_message(to_email, code)
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "otp_email_auth_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("otp_email_recipient_refused", to=_redact_email(to_email), error=str(e))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "otp_email_send_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("otp_email_sent", to=_redact_email(to_email))
        return True

    async def send_otp(self, recipient: str, code: str) -> bool:
        return await asyncio.to_thread(self._send, recipient, code)


class SmsOtpSender:
    """Sends OTP codes through the Twilio Messages API."""

    channel = OtpChannel.SMS

    API_BASE = "https://api.twilio.com/2010-04-01/Accounts"

    def __init__(
        self,
        *,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout = timeout
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def send_otp(self, recipient: str, code: str) -> bool:
        if not self.is_configured:
            logger.info("otp_sms_dev_mode", to=_redact_phone(recipient))
            return True
        url = f"{self.API_BASE}/{self.account_sid}/Messages.json"
        payload = {
            "To": recipient,
            "From": self.from_number,
            "Body": f"Your verification code is {code}",
        }
        auth = httpx.BasicAuth(self.account_sid, self.auth_token)
        try:
            if self._client is not None:
                response = await self._client.post(url, data=payload, auth=auth)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, data=payload, auth=auth)
        except httpx.HTTPError as e:
            logger.error("otp_sms_send_failed", to=_redact_phone(recipient), error=str(e))
            return False
        if response.status_code not in (200, 201):
            logger.error(
                "otp_sms_rejected",
                to=_redact_phone(recipient),
                status_code=response.status_code,
            )
            return False
        logger.info("otp_sms_sent", to=_redact_phone(recipient))
        return True


class NotificationGateway:
    def __init__(self, senders: Mapping[OtpChannel, OtpSender]) -> None:
        self._senders = dict(senders)

    @property
    def channels(self) -> frozenset[OtpChannel]:
        return frozenset(self._senders)

    async def send_otp(self, recipient: str, code: str, channel: OtpChannel) -> None:
        """Deliver ``code`` to ``recipient``; raises DeliveryError on any failure."""
        sender = self._senders.get(OtpChannel(channel))
        if sender is None:
            raise DeliveryError(f"No sender configured for {OtpChannel(channel).value}")
        try:
            delivered = await sender.send_otp(recipient, code)
        except DeliveryError:
            raise
        except Exception as exc:
            logger.error(
                "otp_delivery_error",
                channel=OtpChannel(channel).value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DeliveryError("Failed to deliver verification code") from exc
        if not delivered:
            raise DeliveryError("Failed to deliver verification code")
