"""
Call/Email provider adapters - abstract provider API calls for easier testing

The executor talks to providers only through ProviderAdapter, so tests swap
in MockProviderAdapter instead of patching HTTP or SMTP.
"""
import logging
import smtplib
import socket
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger("provider-adapter")


class ProviderError(Exception):
    """
    Synchronous rejection from a provider

    Attributes:
        reason: Machine-readable failure reason fed to the retry policy
        retryable: Whether the failure is transient
    """

    def __init__(self, message: str, reason: str = "provider-error", retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.retryable = retryable


class ProviderTimeoutError(ProviderError):
    """The provider did not answer within the configured timeout"""

    def __init__(self, message: str = "Provider request timed out"):
        super().__init__(message, reason="provider-timeout", retryable=True)


class ConfigurationError(Exception):
    """Missing credentials or metadata needed to dispatch"""


@dataclass
class ProviderResponse:
    """Provider acceptance of a dispatch"""
    provider_id: str
    initial_status: str = "queued"
    # True when the provider completed delivery synchronously (SMTP)
    delivered: bool = False
    raw: Optional[Dict[str, Any]] = None


class ProviderAdapter(ABC):
    """Abstract interface for provider dispatch"""

    @abstractmethod
    def dispatch(self, payload: Dict[str, Any]) -> ProviderResponse:
        """
        Hand a payload to the provider

        Raises:
            ProviderError: On synchronous rejection (ProviderTimeoutError on timeout)
        """
        pass


class HttpCallProviderAdapter(ProviderAdapter):
    """Outbound voice calls through the provider's HTTP API"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 15.0,
        session: Optional[requests.Session] = None
    ):
        if not api_key:
            raise ConfigurationError("Call provider API key is not configured")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def dispatch(self, payload):
        url = f"{self.base_url}/call"
        body = {
            "customer": {
                "number": payload["phone_number"],
                "name": payload.get("customer_name"),
            },
            "assistantOverrides": {"variableValues": payload.get("variables", {})},
            "metadata": payload.get("metadata", {}),
        }
        if payload.get("assistant_id"):
            body["assistantId"] = payload["assistant_id"]
        if payload.get("phone_number_id"):
            body["phoneNumberId"] = payload["phone_number_id"]

        try:
            response = self.session.post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as e:
            logger.warning(f"Call provider timed out after {self.timeout_seconds}s: {e}")
            raise ProviderTimeoutError(f"Call provider timed out after {self.timeout_seconds}s") from e
        except requests.ConnectionError as e:
            logger.error(f"Call provider unreachable: {e}")
            raise ProviderError(str(e), reason="provider-unavailable", retryable=True) from e

        if response.status_code >= 500 or response.status_code == 429:
            raise ProviderError(
                f"Call provider returned {response.status_code}",
                reason="provider-unavailable",
                retryable=True,
            )
        if response.status_code >= 400:
            raise ProviderError(
                f"Call provider rejected request ({response.status_code}): {response.text[:200]}",
                reason="provider-rejected",
                retryable=False,
            )

        data = response.json()
        provider_id = data.get("id")
        if not provider_id:
            raise ProviderError("Call provider response missing id", reason="provider-error")

        logger.info(f"Call provider accepted call {provider_id} (status {data.get('status')})")
        return ProviderResponse(
            provider_id=provider_id,
            initial_status=data.get("status") or "queued",
            raw=data,
        )


class SmtpEmailProviderAdapter(ProviderAdapter):
    """Discharge emails over SMTP with STARTTLS"""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        timeout_seconds: float = 15.0
    ):
        if not username or not password:
            raise ConfigurationError("SMTP credentials are not configured")
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.timeout_seconds = timeout_seconds

    def dispatch(self, payload):
        message_id = make_msgid()

        msg = MIMEMultipart("alternative")
        msg["From"] = self.username
        msg["To"] = payload["to"]
        msg["Subject"] = payload.get("subject") or ""
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(payload.get("text") or "", "plain"))
        if payload.get("html"):
            msg.attach(MIMEText(payload["html"], "html"))

        try:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds)
            try:
                server.starttls()
                server.login(self.username, self.password)
                server.sendmail(self.username, payload["to"], msg.as_string())
            finally:
                server.quit()
        except socket.timeout as e:
            raise ProviderTimeoutError(f"SMTP timed out after {self.timeout_seconds}s") from e
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP authentication failed: {e}")
            raise ProviderError("SMTP authentication failed", reason="provider-auth-failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            raise ProviderError(f"Recipient refused: {payload['to']}", reason="recipient-rejected") from e
        except (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError, ConnectionError) as e:
            raise ProviderError(str(e), reason="provider-unavailable", retryable=True) from e
        except smtplib.SMTPResponseException as e:
            # 4xx replies are temporary by definition
            retryable = 400 <= e.smtp_code < 500
            raise ProviderError(
                f"SMTP error {e.smtp_code}: {e.smtp_error!r}",
                reason="transient-error" if retryable else "provider-rejected",
                retryable=retryable,
            ) from e
        except smtplib.SMTPException as e:
            raise ProviderError(str(e), reason="provider-error") from e

        logger.info(f"Email sent to {payload['to']} ({message_id})")
        return ProviderResponse(provider_id=message_id, initial_status="sent", delivered=True)


class MockProviderAdapter(ProviderAdapter):
    """Mock implementation for testing"""

    def __init__(self, delivered: bool = False):
        self.dispatches: List[Dict[str, Any]] = []
        self.delivered = delivered
        self.failure: Optional[ProviderError] = None

    def fail_with(self, reason: str, retryable: bool = False, message: str = "Mock provider failure"):
        """Make subsequent dispatches raise a ProviderError"""
        self.failure = ProviderError(message, reason=reason, retryable=retryable)

    def dispatch(self, payload):
        if self.failure is not None:
            raise self.failure
        provider_id = f"mock-{uuid.uuid4().hex[:12]}"
        self.dispatches.append({"provider_id": provider_id, "payload": payload})
        return ProviderResponse(
            provider_id=provider_id,
            initial_status="sent" if self.delivered else "queued",
            delivered=self.delivered,
        )

    @property
    def dispatch_count(self) -> int:
        return len(self.dispatches)

    def reset(self):
        """Reset mock state"""
        self.dispatches.clear()
        self.failure = None
