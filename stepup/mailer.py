"""
stepup/mailer.py

Outbound email for one-time codes, over SMTP with aiosmtplib.

Port 465 uses implicit TLS (SMTPS); every other port upgrades with STARTTLS
when the server offers it.
"""

from __future__ import annotations

import email.message
import email.policy
import logging

import aiosmtplib

logger = logging.getLogger(__name__)


class EmailSender:
    def __init__(
        self,
        host: str = "localhost",
        port: int = 1025,
        username: str = "",
        password: str = "",
        from_email: str = "",
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email or username or "Step-up MFA <no-reply@stepup.test>"
        self.timeout = timeout
        self.use_tls = port == 465
        logger.info("SMTP transport -> %s:%s secure=%s", host, port, self.use_tls)

    @classmethod
    def from_settings(cls, settings) -> "EmailSender":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USER,
            password=settings.SMTP_PASS,
            from_email=settings.SMTP_FROM,
        )

    def build_otp_message(self, to: str, code: str, ttl_minutes: int = 5) -> email.message.EmailMessage:
        message = email.message.EmailMessage(policy=email.policy.default)
        message["To"] = to
        message["From"] = self.from_email
        message["Subject"] = "Your verification code"
        message.set_content(
            f"Your verification code is {code}. It expires in {ttl_minutes} minutes.",
            charset="utf-8",
        )
        return message

    async def send_otp(self, to: str, code: str, ttl_minutes: int = 5) -> None:
        """Raises on any transport error; callers map that to DeliveryFailed."""
        await aiosmtplib.send(
            self.build_otp_message(to, code, ttl_minutes),
            hostname=self.host,
            port=self.port,
            username=self.username or None,
            password=self.password or None,
            use_tls=self.use_tls,
            timeout=self.timeout,
        )
