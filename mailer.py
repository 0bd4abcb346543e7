"""
OTP email delivery.

Real delivery goes through SMTP (Gmail by default). When no credentials are
configured, when the SMTP login cannot be verified at startup, or after too
many consecutive delivery failures, mail is routed to a simulated transport
that logs the passcode and keeps a copy in the ``testotp`` collection so the
login flow stays usable in development.
"""

import asyncio
import logging
import re
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from email.message import EmailMessage
from email.utils import formataddr, formatdate, make_msgid
from typing import Any, Callable, Dict, Optional, Tuple

import aiosmtplib
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

import config
import database
from schemas import TestOtp

logger = logging.getLogger(__name__)

OTP_PATTERN = re.compile(r"\b(\d{6})\b")
SENDER_NAME = "AI Music Player"
DEFAULT_SENDER = "noreply@aimusicplayer.com"
SUBJECT = "Your OTP for AI Music Player"


class DeliveryError(Exception):
    pass


@dataclass
class SendResult:
    success: bool
    mode: str
    simulated: bool = False
    message_id: Optional[str] = None
    otp: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    response_code: Optional[int] = None
    debug_info: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class SmtpTransport:
    def __init__(self, host: str, port: int, username: str, password: str, timeout: float = 10):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.timeout = timeout

    def _client(self) -> aiosmtplib.SMTP:
        return aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            timeout=self.timeout,
            use_tls=self.port == 465,  # implicit TLS; 587 upgrades via STARTTLS on connect
        )

    async def verify(self) -> bool:
        smtp = self._client()
        await smtp.connect()
        try:
            await smtp.login(self.username, self.password)
        finally:
            if smtp.is_connected:
                await smtp.quit()
        return True

    async def send(self, message: EmailMessage) -> Dict[str, Any]:
        smtp = self._client()
        await smtp.connect()
        try:
            await smtp.login(self.username, self.password)
            errors, response = await smtp.send_message(message)
        finally:
            if smtp.is_connected:
                await smtp.quit()
        recipients = [message["To"]]
        return {
            "message_id": message["Message-ID"],
            "accepted": [r for r in recipients if r not in errors],
            "rejected": list(errors),
            "response": response,
            "simulated": False,
        }


class SimulatedTransport:
    def __init__(self, system: "EmailSystem"):
        self.system = system

    async def verify(self) -> bool:
        return True

    async def send(self, message: EmailMessage) -> Dict[str, Any]:
        # plain part first: the HTML stylesheet has six-digit colour codes
        body = message.get_body(preferencelist=("plain", "html"))
        match = OTP_PATTERN.search(body.get_content() if body is not None else "")
        otp = match.group(1) if match else "NOT_FOUND"
        recipient = message["To"]

        banner = "=" * 60
        logger.info(
            "\n%s\nEMAIL SIMULATION\n%s\nTo: %s\nSubject: %s\nOTP Code: %s\nMode: %s\n%s",
            banner, banner, recipient, message["Subject"], otp, self.system.mode, banner,
        )

        await run_in_threadpool(self.system.store_otp_for_testing, recipient, otp)

        return {
            "message_id": f"simulated-{int(time.time() * 1000)}",
            "simulated": True,
            "otp": otp,
            "accepted": [recipient],
            "response": "250 Message accepted (simulated)",
        }


def classify_error(exc: BaseException) -> Tuple[str, Optional[int]]:
    """Map an SMTP failure to a short error code and the SMTP reply code, if any."""
    if isinstance(exc, aiosmtplib.SMTPAuthenticationError):
        return "EAUTH", exc.code
    if isinstance(exc, (aiosmtplib.SMTPTimeoutError, asyncio.TimeoutError)):
        return "ETIMEDOUT", None
    if isinstance(exc, (aiosmtplib.SMTPConnectError, ConnectionRefusedError)):
        return "ECONNREFUSED", None
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        codes = [r.code for r in exc.recipients]
        return "EENVELOPE", codes[0] if codes else None
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        return "EMESSAGE", exc.code
    return type(exc).__name__, None


def _log_hint(error_code: str, response_code: Optional[int]) -> None:
    if error_code == "EAUTH":
        logger.error("SMTP authentication failed: check EMAIL_USER and EMAIL_PASS (Gmail needs an App Password)")
    elif error_code == "ETIMEDOUT":
        logger.error("SMTP connection timeout: check network and firewall settings")
    elif error_code == "ECONNREFUSED":
        logger.error("SMTP connection refused: server down or port %s blocked", config.EMAIL_PORT)
    elif response_code == 550:
        logger.error("Mailbox not found: recipient address may be invalid")
    elif response_code == 554:
        logger.error("Message rejected by recipient server")


class EmailSystem:
    max_consecutive_failures = 3

    def __init__(
        self,
        user: Optional[str] = None,
        password: Optional[str] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        environment: Optional[str] = None,
        db_provider: Optional[Callable[[], Optional[Database]]] = None,
    ):
        self.user = (config.EMAIL_USER if user is None else user).strip()
        self.password = (config.EMAIL_PASS if password is None else password).strip()
        self.host = host or config.EMAIL_HOST
        self.port = port or config.EMAIL_PORT
        self.environment = environment or config.ENVIRONMENT
        self.db_provider = db_provider or (lambda: database.db)

        self.transport = None
        self.configured = False
        self.mode = "unknown"
        self.initialized = False
        self.consecutive_failures = 0

    @property
    def has_credentials(self) -> bool:
        return bool(self.user and self.password)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    async def initialize(self) -> None:
        logger.info("Initializing email system...")

        if not self.has_credentials:
            logger.warning("Email credentials not configured, using simulation mode")
            self._use_simulation("simulation")
            return

        logger.info("Configuring SMTP transport (%s:%s)", self.host, self.port)
        transport = SmtpTransport(self.host, self.port, self.user, self.password)
        try:
            await transport.verify()
        except (aiosmtplib.SMTPException, OSError) as e:
            error_code, response_code = classify_error(e)
            logger.error("Email system initialization failed: %s (%s)", e, error_code)
            _log_hint(error_code, response_code)
            logger.info("Falling back to simulation mode")
            self._use_simulation("fallback")
            return

        logger.info("Email transporter verified")
        self.transport = transport
        self.configured = True
        self.mode = "production"
        self.initialized = True

    def _use_simulation(self, mode: str) -> None:
        self.transport = SimulatedTransport(self)
        self.configured = False
        self.mode = mode
        self.initialized = True

    def store_otp_for_testing(self, email: str, otp: str) -> None:
        target = self.db_provider()
        if target is None:
            logger.warning("No database available, test OTP for %s not saved", email)
            return
        try:
            target["testotp"].update_one(
                {"email": email},
                {"$set": {**TestOtp(email=email, otp=otp).model_dump(), "created_at": database.utcnow()}},
                upsert=True,
            )
        except PyMongoError as e:
            logger.error("Failed to save test OTP: %s", e)
            return
        logger.debug("Test OTP saved: %s -> %s", email, otp)

    def build_message(self, email: str, otp: str) -> EmailMessage:
        sender = self.user or DEFAULT_SENDER
        message = EmailMessage()
        message["From"] = formataddr((SENDER_NAME, sender))
        message["To"] = email
        message["Subject"] = SUBJECT
        message["Date"] = formatdate(localtime=True)
        message["Message-ID"] = make_msgid(domain=sender.split("@")[-1])
        message.set_content(f"Your OTP code is: {otp}. This code expires in 10 minutes.")
        message.add_alternative(render_otp_html(otp), subtype="html")
        return message

    async def send_otp_email(self, email: str, otp: str) -> SendResult:
        if not self.initialized:
            await self.initialize()

        message = self.build_message(email, otp)

        try:
            result = await self.transport.send(message)

            if result.get("simulated"):
                logger.info("OTP sent in simulation mode")
                return SendResult(
                    success=True,
                    simulated=True,
                    otp=result.get("otp"),
                    mode=self.mode,
                    message_id=result.get("message_id"),
                )

            delivered = bool(result.get("accepted")) or "250" in str(result.get("response") or "")
            if not delivered:
                raise DeliveryError("Email was not accepted by mail server")

            logger.info("OTP delivered to %s", email)
            self.consecutive_failures = 0
            return SendResult(success=True, mode=self.mode, message_id=result.get("message_id"))

        except (aiosmtplib.SMTPException, OSError, DeliveryError) as e:
            error_code, response_code = classify_error(e)
            logger.error("Email sending error: %s (%s)", e, error_code)
            _log_hint(error_code, response_code)

            self.consecutive_failures += 1
            if self.consecutive_failures >= self.max_consecutive_failures:
                logger.error(
                    "Too many consecutive failures (%s), switching to simulation mode",
                    self.consecutive_failures,
                )
                self._use_simulation("fallback")

            return SendResult(
                success=False,
                mode=self.mode,
                error=str(e),
                error_code=error_code,
                response_code=response_code,
                debug_info=None if self.is_production else {"exception": type(e).__name__},
            )

    def get_status(self) -> Dict[str, Any]:
        return {
            "configured": self.configured,
            "mode": self.mode,
            "initialized": self.initialized,
            "consecutiveFailures": self.consecutive_failures,
            "hasCredentials": self.has_credentials,
            "environment": self.environment,
        }


def render_otp_html(otp: str) -> str:
    year = datetime.now().year
    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>AI Music Player OTP</title>
    <style>
        body {{ font-family: Arial, sans-serif; background: #f5f5f5; margin: 0; padding: 20px; }}
        .container {{ max-width: 600px; margin: 0 auto; background: white; border-radius: 10px; overflow: hidden; }}
        .header {{ background: linear-gradient(135deg, #7474bf, #348ac7); padding: 30px; text-align: center; color: white; }}
        .content {{ padding: 30px; text-align: center; }}
        .otp-code {{ font-size: 48px; font-weight: bold; letter-spacing: 10px; color: #333; margin: 30px 0;
                     padding: 20px; background: #f8f9fa; border-radius: 8px; font-family: monospace; }}
        .note {{ color: #666; font-size: 14px; margin-top: 20px; }}
        .security-note {{ background: #fff3cd; padding: 15px; border-radius: 5px; margin-top: 20px; color: #856404; font-size: 13px; }}
        .footer {{ background: #f8f9fa; padding: 20px; text-align: center; color: #666; font-size: 12px; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h1>AI Music Player</h1>
            <p>Your Music, Anywhere</p>
        </div>
        <div class="content">
            <h2>Verification Code</h2>
            <p>Enter this code in the AI Music Player app to verify your email address:</p>
            <div class="otp-code">{otp}</div>
            <p class="note">This code will expire in <strong>10 minutes</strong>.</p>
            <div class="security-note">
                <strong>Security Notice:</strong> Never share this code with anyone.
                AI Music Player staff will never ask for your OTP.
            </div>
            <p style="margin-top: 20px; font-size: 13px; color: #999;">
                If you didn't request this code, you can safely ignore this email.
            </p>
        </div>
        <div class="footer">
            <p>&copy; {year} AI Music Player. All rights reserved.</p>
            <p>This is an automated email, please do not reply.</p>
        </div>
    </div>
</body>
</html>
"""
