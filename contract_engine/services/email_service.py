# contract_engine/services/email_service.py
from __future__ import annotations

import logging
from html import escape
from typing import Optional

import sib_api_v3_sdk
from sib_api_v3_sdk.rest import ApiException

from contract_engine.core.config import Settings, get_settings
from contract_engine.core.errors import EmailDeliveryError

logger = logging.getLogger(__name__)

_ROLE_LABEL = {"student": "student", "tutor": "tutor"}


def render_otp_email(*, code: str, recipient_name: str, contract_code: str, role: str, ttl_minutes: int) -> dict:
    subject = f"Your signing code for contract {contract_code}"
    text = (
        f"Hello {recipient_name},\n\n"
        f"Your one-time code to sign contract {contract_code} as {_ROLE_LABEL.get(role, role)} is {code}.\n"
        f"It expires in {ttl_minutes} minutes. Do not share it with anyone.\n"
    )
    html = (
        f"<p>Hello {escape(recipient_name)},</p>"
        f"<p>Your one-time code to sign contract <b>{escape(contract_code)}</b> "
        f"as {escape(_ROLE_LABEL.get(role, role))} is:</p>"
        f"<h2 style=\"letter-spacing:4px\">{escape(code)}</h2>"
        f"<p>It expires in {ttl_minutes} minutes. Do not share it with anyone.</p>"
    )
    return {"subject": subject, "html_content": html, "text_content": text}


class EmailSender:
    """Outbound e-mail port. Implementations raise EmailDeliveryError on failure."""

    def send_otp_email(
        self,
        *,
        to_address: str,
        code: str,
        recipient_name: str,
        contract_code: str,
        role: str,
    ) -> None:
        raise NotImplementedError


class LoggingEmailSender(EmailSender):
    """Development sender: nothing leaves the process."""

    def send_otp_email(self, *, to_address, code, recipient_name, contract_code, role) -> None:
        # the code itself is never logged
        logger.info(
            "otp_email_suppressed",
            extra={"to": to_address, "contract_code": contract_code, "role": role},
        )


class BrevoEmailSender(EmailSender):
    """Transactional e-mail through the Brevo (Sendinblue) API."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        configuration = sib_api_v3_sdk.Configuration()
        configuration.api_key["api-key"] = self.settings.brevo_api_key
        self.api_client = sib_api_v3_sdk.ApiClient(configuration)
        self.transactional_emails_api = sib_api_v3_sdk.TransactionalEmailsApi(self.api_client)

    def send_otp_email(self, *, to_address, code, recipient_name, contract_code, role) -> None:
        template = render_otp_email(
            code=code,
            recipient_name=recipient_name,
            contract_code=contract_code,
            role=role,
            ttl_minutes=self.settings.otp_ttl_minutes,
        )
        send_smtp_email = sib_api_v3_sdk.SendSmtpEmail(
            to=[sib_api_v3_sdk.SendSmtpEmailTo(email=to_address, name=recipient_name)],
            sender=sib_api_v3_sdk.SendSmtpEmailSender(
                email=self.settings.email_from_address, name=self.settings.email_from_name
            ),
            subject=template["subject"],
            html_content=template["html_content"],
            text_content=template["text_content"],
            tags=["contract-signing", "otp"],
        )
        try:
            api_response = self.transactional_emails_api.send_transac_email(send_smtp_email)
        except ApiException as e:
            logger.error("otp_email_failed", extra={"to": to_address, "status": getattr(e, "status", None)})
            raise EmailDeliveryError("Could not deliver the signing code. Please try again.") from e
        except Exception as e:
            # connection and timeout errors from the urllib3 layer
            logger.error("otp_email_failed", extra={"to": to_address, "error": type(e).__name__})
            raise EmailDeliveryError("Could not deliver the signing code. Please try again.") from e

        logger.info(
            "otp_email_sent",
            extra={"to": to_address, "contract_code": contract_code, "message_id": api_response.message_id},
        )


def build_email_sender(settings: Optional[Settings] = None) -> EmailSender:
    settings = settings or get_settings()
    if not settings.brevo_api_key:
        logger.warning("BREVO_API_KEY not configured - signing codes will only be logged")
        return LoggingEmailSender()
    return BrevoEmailSender(settings)
