"""
Outbound email seam.

Delivery itself (SMTP) lives outside this service; LogMailer records that a
message was dispatched without ever writing the code or token to the log.
"""
import logging

logger = logging.getLogger(__name__)


class LogMailer:
    def send_otp(self, email: str, first_name: str, code: str) -> None:
        logger.info("Verification code dispatched to %s", email)

    def send_welcome(self, email: str, first_name: str) -> None:
        logger.info("Welcome email dispatched to %s", email)

    def send_password_reset(self, email: str, first_name: str, token: str) -> None:
        logger.info("Password reset link dispatched to %s", email)

    def send_password_reset_confirmation(self, email: str, first_name: str) -> None:
        logger.info("Password reset confirmation dispatched to %s", email)
