import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from circulation.config import settings
from circulation.errors import ExternalServiceError
from circulation.services.http_client import OptimizedHTTPClient, get_http_client

logger = logging.getLogger(__name__)

STUDENT = "student"
ADMIN = "admin"


@dataclass
class EmailMessage:
    """Data structure for a templated e-mail notification"""
    name: str
    subject: str
    message: str
    target: str = STUDENT

    def template_params(self, timezone_name: str) -> Dict[str, Any]:
        try:
            now = datetime.now(ZoneInfo(timezone_name))
        except (ZoneInfoNotFoundError, ValueError):
            now = datetime.now()
        return {
            "to_name": self.name,
            "subject": self.subject,
            "message": self.message,
            "date": now.strftime("%d/%m/%Y %H:%M:%S"),
        }


class EmailService:
    """Service for sending templated e-mails through the EmailJS REST API.

    The recipient is fixed inside each template; the service only chooses
    between the student and admin templates.
    """

    def __init__(self, http_client: Optional[OptimizedHTTPClient] = None,
                 service_id: Optional[str] = None, public_key: Optional[str] = None,
                 template_student: Optional[str] = None, template_admin: Optional[str] = None,
                 api_url: Optional[str] = None):
        self._http_client = http_client
        self.service_id = service_id or settings.emailjs_service_id
        self.public_key = public_key or settings.emailjs_public_key
        self.template_student = template_student or settings.emailjs_template_student
        self.template_admin = template_admin or settings.emailjs_template_admin
        self.api_url = api_url or settings.email_api_url

    def _template_for(self, target: str) -> Optional[str]:
        return self.template_admin if target == ADMIN else self.template_student

    def is_available(self, target: str = STUDENT) -> bool:
        """Check if the service has the keys needed for a target template"""
        return bool(self.service_id and self.public_key and self._template_for(target))

    async def send(self, email: EmailMessage) -> bool:
        """Send one e-mail. Returns False when the service is not configured."""
        template_id = self._template_for(email.target)
        if not self.is_available(email.target):
            logger.warning(f"EmailJS keys missing, skipping '{email.target}' e-mail")
            return False

        payload = {
            "service_id": self.service_id,
            "template_id": template_id,
            "user_id": self.public_key,
            "template_params": email.template_params(settings.email_timezone),
        }
        client = self._http_client or await get_http_client()
        try:
            response = await client.post_with_retry(self.api_url, json=payload)
        except httpx.RequestError as e:
            raise ExternalServiceError(f"E-mail API unreachable: {e}") from e

        if response.status_code != 200:
            raise ExternalServiceError(
                f"E-mail API request failed: {response.status_code} - {response.text}"
            )
        logger.info(f"E-mail sent ({email.target}): {email.subject}")
        return True
