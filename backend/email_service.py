import logging
import os
import smtplib
from email.message import EmailMessage

from config import HTTP_TIMEOUT_SECONDS, OTP_EXPIRY_MINUTES

logger = logging.getLogger(__name__)


def send_vote_otp(to_email, otp):
    msg = EmailMessage()
    msg["Subject"] = "Your voting verification code"
    msg["From"] = os.getenv("SMTP_EMAIL")
    msg["To"] = to_email

    msg.set_content(f"""
Hello,

Your verification code to confirm your vote is:

{otp}

This code is valid for {OTP_EXPIRY_MINUTES} minutes.
If you did not request this, please ignore this email.
""")

    server = smtplib.SMTP(os.getenv("SMTP_HOST"), int(os.getenv("SMTP_PORT", "587")), timeout=HTTP_TIMEOUT_SECONDS)
    try:
        server.starttls()
        server.login(
            os.getenv("SMTP_EMAIL"),
            os.getenv("SMTP_PASSWORD")
        )
        server.send_message(msg)
    finally:
        server.quit()


class EmailChallengeDelivery:
    def send(self, address, code):
        try:
            send_vote_otp(address, code)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Error sending OTP email to %s: %s", address, exc)
            return False
        return True
