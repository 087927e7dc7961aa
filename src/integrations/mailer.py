"""Email hand-off to the sending service.

AgencyFlow does not deliver email itself. Send steps render their
template and hand the message to a sending service over HTTP; the
service owns delivery, bounces and open/click tracking.

Usage:
    from src.integrations.mailer import WebhookMailer, OutboundEmail

    mailer = WebhookMailer()
    message_id = mailer.send(OutboundEmail(to="ann@example.com", subject="Hi", html="<p>Hi</p>"))
"""

import uuid
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import requests  # type: ignore[import-untyped]

from src.core.config import get_config
from src.core.exceptions import EmailSendError, IntegrationError
from src.core.logging import get_logger
from src.integrations.base import IntegrationBase, RateLimiter, RetryPolicy

logger = get_logger(__name__)

# Statuses worth retrying; anything else in 4xx is a permanent rejection
_RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


class _RetryableResponse(Exception):
    """Transient HTTP status from the sending service."""

    def __init__(self, response: requests.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


@dataclass
class OutboundEmail:
    """Message handed to the sending service.

    Attributes:
        to: Recipient address
        subject: Subject line
        html: Rendered HTML body
        from_email: Sender address (service default if None)
        template_key: Template used, for reporting
        metadata: Ids the service echoes back on open/click webhooks
    """

    to: str
    subject: str
    html: str
    from_email: Optional[str] = None
    template_key: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "to": self.to,
            "subject": self.subject,
            "html": self.html,
            "templateKey": self.template_key,
            "metadata": self.metadata,
        }
        if self.from_email:
            payload["from"] = self.from_email
        return payload


class Mailer(IntegrationBase):
    """Anything that can take an OutboundEmail."""

    name = "mailer"

    @abstractmethod
    def send(self, email: OutboundEmail) -> str:
        """Hand off an email.

        Returns:
            Message id assigned by the service

        Raises:
            EmailSendError: If the service rejects or cannot be reached
        """


class WebhookMailer(Mailer):
    """POSTs messages as JSON to the configured endpoint with a bearer key."""

    name = "email-service"
    retry_policy = RetryPolicy(
        max_retries=2, transient=(requests.RequestException, _RetryableResponse)
    )

    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        dry_run: Optional[bool] = None,
        calls_per_minute: int = 120,
        timeout: float = 30.0,
    ) -> None:
        config = get_config()
        self.endpoint = endpoint or config.email_endpoint
        self._api_key = api_key or config.email_api_key
        self.from_email = config.from_email
        self.dry_run = config.dry_run if dry_run is None else dry_run
        self.timeout = timeout
        self._rate_limiter = RateLimiter(calls_per_minute=calls_per_minute)

    def is_configured(self) -> bool:
        return bool(self.endpoint and self._api_key)

    def health_check(self) -> bool:
        """Check the service answers at all (any non-5xx response)."""
        if self.dry_run:
            return True
        if not self.is_configured():
            return False
        try:
            response = requests.head(self.endpoint, headers=self._headers(), timeout=10)
        except requests.RequestException:
            return False
        return response.status_code < 500

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def send(self, email: OutboundEmail) -> str:
        """Hand off one message.

        Retries connection errors and 429/5xx responses with backoff.

        Returns:
            Message id from the service (or a local id in dry-run)

        Raises:
            EmailSendError: Not configured, rejected, or retries exhausted
        """
        if not email.to:
            raise EmailSendError("Email has no recipient")
        if email.from_email is None and self.from_email:
            email.from_email = self.from_email

        if self.dry_run:
            message_id = f"dry-run-{uuid.uuid4().hex[:12]}"
            logger.info(
                "Dry run: email not handed off",
                extra={
                    "context": {
                        "to": email.to,
                        "template": email.template_key,
                        "message_id": message_id,
                    }
                },
            )
            return message_id

        if not self.is_configured():
            raise EmailSendError("Email service not configured")

        def _post() -> requests.Response:
            self._rate_limiter.wait_if_needed()
            response = requests.post(
                self.endpoint,
                headers=self._headers(),
                json=email.to_payload(),
                timeout=self.timeout,
            )
            if response.status_code in _RETRYABLE_STATUSES:
                raise _RetryableResponse(response)
            return response

        try:
            response = self.with_retry(_post)
        except IntegrationError as e:
            raise EmailSendError(f"Email hand-off failed: {e}") from e

        if response.status_code >= 400:
            raise EmailSendError(
                f"Email service rejected message ({response.status_code}): {response.text[:200]}"
            )

        message_id = ""
        try:
            body = response.json()
            if isinstance(body, dict):
                message_id = str(body.get("id") or body.get("messageId") or "")
        except ValueError:
            logger.debug("Email service returned no JSON body", extra={"context": {"to": email.to}})

        logger.info(
            "Email handed off",
            extra={
                "context": {
                    "to": email.to,
                    "template": email.template_key,
                    "message_id": message_id,
                }
            },
        )
        return message_id
