"""Send emails (registration and password reset codes) via SMTP."""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Tuple

from accounts.core.config import settings
from accounts.core.errors import EmailDeliveryError
from accounts.models.verification_code import CodePurpose

logger = logging.getLogger(__name__)

# Avoid blocking the request forever if SMTP is slow or unreachable
SMTP_TIMEOUT_SECONDS = 15


def send_email(to_email: str, subject: str, html: str, text: Optional[str] = None) -> None:
    """
    Send one HTML email (with optional plain-text part).
    Raises EmailDeliveryError if SMTP is not configured or the send failed.
    """
    if not settings.SMTP_HOST or not settings.SMTP_USER:
        logger.warning("SMTP not configured (SMTP_HOST/SMTP_USER). Skipping send.")
        raise EmailDeliveryError()

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{settings.SMTP_FROM_NAME} <{settings.SMTP_FROM_EMAIL}>"
    msg["To"] = to_email
    if text:
        msg.attach(MIMEText(text, "plain", "utf-8"))
    msg.attach(MIMEText(html, "html", "utf-8"))

    try:
        with smtplib.SMTP(
            settings.SMTP_HOST, settings.SMTP_PORT, timeout=SMTP_TIMEOUT_SECONDS
        ) as server:
            server.starttls()
            server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
            server.sendmail(settings.SMTP_FROM_EMAIL, [to_email], msg.as_string())
    except smtplib.SMTPAuthenticationError as e:
        logger.exception("SMTP login failed for %s: %s", to_email, e)
        raise EmailDeliveryError() from e
    except (smtplib.SMTPException, OSError) as e:
        logger.exception("Failed to send email to %s: %s", to_email, e)
        raise EmailDeliveryError() from e
    logger.info("Email '%s' sent to %s", subject, to_email)


def _code_email(purpose: CodePurpose, code: str, expire_minutes: int) -> Tuple[str, str, str]:
    app_name = settings.APP_NAME
    if purpose == CodePurpose.register:
        subject = f"{app_name} - Registration code"
        heading = f"Welcome to {app_name}"
        intro = "Your registration code is:"
        outro = "If you didn't request this, you can ignore this email."
    else:
        subject = f"{app_name} - Password reset code"
        heading = f"{app_name} password reset"
        intro = "Your password reset code is:"
        outro = "If you didn't request this, please check your account security right away."

    html = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; max-width: 560px; margin: 0 auto; padding: 24px;">
  <h1 style="font-size: 20px; color: #1a1a1a;">{heading}</h1>
  <p style="font-size: 16px; color: #1a1a1a; line-height: 1.5;">{intro}</p>
  <p style="margin: 24px 0; font-size: 28px; font-weight: 600; letter-spacing: 0.2em;">
    <strong>{code}</strong>
  </p>
  <p style="font-size: 14px; color: #737373;">
    The code is valid for {expire_minutes} minutes. Please use it soon.
  </p>
  <p style="font-size: 14px; color: #737373;">{outro}</p>
</body>
</html>
"""
    text = (
        f"{heading}\n\n"
        f"{intro} {code}\n\n"
        f"The code is valid for {expire_minutes} minutes.\n\n"
        f"{outro}\n"
    )
    return subject, html, text


def send_verification_code_email(
    to_email: str,
    code: str,
    purpose: CodePurpose,
    expire_minutes: Optional[int] = None,
) -> None:
    """Send a registration or password reset code. Raises EmailDeliveryError."""
    if expire_minutes is None:
        expire_minutes = settings.VERIFY_CODE_EXPIRE_MINUTES
    subject, html, text = _code_email(CodePurpose(purpose), code, expire_minutes)
    send_email(to_email, subject, html, text)
