"""
External Service Ports and Adapters
Payment processor (Stripe), email provider (SendGrid) and KYC/AML screening

Every collaborator is an abstract port with two adapters:
- mock: in-process, deterministic, used in development and tests
- live: REST over aiohttp, retried with exponential backoff on transient failures

Adapters receive an IntegrationSettings object; none of them read the environment.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from config import IntegrationSettings
from services.retry_service import RetryService
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import ExternalServiceError

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    amount: Decimal
    currency: str
    status: str
    idempotency_key: str
    client_secret: Optional[str] = None


@dataclass(frozen=True)
class EmailReceipt:
    message_id: str
    accepted: bool


@dataclass(frozen=True)
class ScreeningResult:
    subject_id: str
    sanctions_hit: bool
    pep_hit: bool
    reference: str
    matches: List[Dict[str, Any]] = field(default_factory=list)

    def to_check(self, kind: str) -> Dict[str, Any]:
        hit = self.sanctions_hit if kind == "sanctions" else self.pep_hit
        return {
            "hit": hit,
            "reference": self.reference,
            "matches": [m for m in self.matches if m.get("type", kind) == kind],
        }


# ============================================================================
# PORTS
# ============================================================================

class PaymentGateway(ABC):
    service_name = "payments"

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentIntent:
        """Create (or return the existing) intent for ``idempotency_key``"""


class EmailProvider(ABC):
    service_name = "email"

    @abstractmethod
    async def send_email(self, to: str, subject: str, body: str) -> EmailReceipt:
        pass


class ScreeningProvider(ABC):
    service_name = "screening"

    @abstractmethod
    async def screen_subject(
        self, subject_id: str, full_name: Optional[str] = None, country: Optional[str] = None
    ) -> ScreeningResult:
        pass


# ============================================================================
# MOCK ADAPTERS
# ============================================================================

class MockPaymentGateway(PaymentGateway):
    """Deterministic in-memory gateway honouring idempotency keys"""

    def __init__(self):
        self.intents: Dict[str, PaymentIntent] = {}

    async def create_payment_intent(self, amount, currency, idempotency_key, metadata=None):
        existing = self.intents.get(idempotency_key)
        if existing is not None:
            logger.info(f"♻️ MOCK_PAYMENT: replayed intent {existing.id} for key {idempotency_key}")
            return existing

        amount = MonetaryDecimal.validate_positive(amount, "payment_amount")
        intent = PaymentIntent(
            id=f"pi_mock_{uuid.uuid4().hex[:16]}",
            amount=MonetaryDecimal.quantize_usd(amount),
            currency=currency.upper(),
            status="requires_payment_method",
            idempotency_key=idempotency_key,
            client_secret=f"secret_mock_{uuid.uuid4().hex[:12]}",
        )
        self.intents[idempotency_key] = intent
        logger.info(f"💳 MOCK_PAYMENT: intent {intent.id} {intent.amount} {intent.currency}")
        return intent


class MockEmailProvider(EmailProvider):
    def __init__(self):
        self.outbox: List[Dict[str, str]] = []

    async def send_email(self, to, subject, body):
        message_id = f"msg_mock_{uuid.uuid4().hex[:12]}"
        self.outbox.append({"to": to, "subject": subject, "body": body, "message_id": message_id})
        logger.info(f"📧 MOCK_EMAIL: {subject!r} -> {to}")
        return EmailReceipt(message_id=message_id, accepted=True)


class MockScreeningProvider(ScreeningProvider):
    """Flags subjects listed at construction time, clears everyone else"""

    def __init__(self, sanctioned: Optional[set] = None, politically_exposed: Optional[set] = None):
        self.sanctioned = set(sanctioned or ())
        self.politically_exposed = set(politically_exposed or ())

    async def screen_subject(self, subject_id, full_name=None, country=None):
        matches = []
        if subject_id in self.sanctioned:
            matches.append({"type": "sanctions", "list": "MOCK-OFAC", "subject_id": subject_id})
        if subject_id in self.politically_exposed:
            matches.append({"type": "pep", "list": "MOCK-PEP", "subject_id": subject_id})
        return ScreeningResult(
            subject_id=subject_id,
            sanctions_hit=subject_id in self.sanctioned,
            pep_hit=subject_id in self.politically_exposed,
            reference=f"scr_mock_{uuid.uuid4().hex[:12]}",
            matches=matches,
        )


# ============================================================================
# LIVE ADAPTERS
# ============================================================================

class LiveAdapter:
    """aiohttp request plumbing shared by the live adapters"""

    service_name = "external"

    def __init__(self, settings: IntegrationSettings, retry_sleep: Optional[SleepFn] = None):
        self.settings = settings
        self.retry_sleep = retry_sleep

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.settings.http_timeout_seconds)

    def _error_for_status(self, status: int, body: str) -> ExternalServiceError:
        retryable = status == 429 or status >= 500
        return ExternalServiceError(
            self.service_name, f"HTTP {status}: {body[:200]}", retryable=retryable, status_code=status
        )

    async def _request(
        self,
        url: str,
        headers: Dict[str, str],
        json_body: Optional[Dict[str, Any]] = None,
        form_body: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """POST and return the decoded JSON body plus response headers"""
        try:
            async with aiohttp.ClientSession(headers=headers, timeout=self._timeout()) as session:
                async with session.post(url, json=json_body, data=form_body) as response:
                    text = await response.text()
                    if response.status >= 400:
                        raise self._error_for_status(response.status, text)
                    payload = await response.json(content_type=None) if text else {}
                    return {"status": response.status, "body": payload or {}, "headers": dict(response.headers)}
        except ExternalServiceError:
            raise
        except asyncio.TimeoutError as e:
            raise ExternalServiceError(self.service_name, "request timed out", retryable=True) from e
        except aiohttp.ClientError as e:
            raise ExternalServiceError(self.service_name, f"connection error: {e}", retryable=True) from e

    async def _with_retry(self, strategy: str, func):
        return await RetryService.with_strategy(strategy, func, sleep=self.retry_sleep)


class StripePaymentGateway(LiveAdapter, PaymentGateway):
    service_name = "stripe"

    def __init__(self, settings: IntegrationSettings, retry_sleep: Optional[SleepFn] = None):
        if not settings.stripe_secret_key:
            raise ValueError("STRIPE_SECRET_KEY is required for live payments")
        super().__init__(settings, retry_sleep)

    async def create_payment_intent(self, amount, currency, idempotency_key, metadata=None):
        form = {
            "amount": str(MonetaryDecimal.to_minor_units(amount, currency)),
            "currency": currency.lower(),
        }
        for key, value in (metadata or {}).items():
            form[f"metadata[{key}]"] = str(value)

        headers = {
            "Authorization": f"Bearer {self.settings.stripe_secret_key}",
            # same key on every retry, so a retried request never double-charges
            "Idempotency-Key": idempotency_key,
        }

        async def attempt():
            return await self._request(
                f"{self.settings.stripe_api_base}/payment_intents", headers, form_body=form
            )

        response = await self._with_retry("payment", attempt)
        body = response["body"]
        logger.info(f"💳 STRIPE_INTENT: {body.get('id')} status={body.get('status')}")
        return PaymentIntent(
            id=body["id"],
            amount=MonetaryDecimal.quantize_usd(amount),
            currency=currency.upper(),
            status=body.get("status", "unknown"),
            idempotency_key=idempotency_key,
            client_secret=body.get("client_secret"),
        )


class SendGridEmailProvider(LiveAdapter, EmailProvider):
    service_name = "sendgrid"

    def __init__(self, settings: IntegrationSettings, retry_sleep: Optional[SleepFn] = None):
        if not settings.sendgrid_api_key:
            raise ValueError("SENDGRID_API_KEY is required for live email")
        super().__init__(settings, retry_sleep)

    async def send_email(self, to, subject, body):
        message = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.settings.email_from},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        headers = {"Authorization": f"Bearer {self.settings.sendgrid_api_key}"}

        async def attempt():
            return await self._request(
                f"{self.settings.sendgrid_api_base}/mail/send", headers, json_body=message
            )

        response = await self._with_retry("email", attempt)
        message_id = response["headers"].get("X-Message-Id", "")
        logger.info(f"📧 SENDGRID_SENT: {subject!r} -> {to} ({message_id})")
        return EmailReceipt(message_id=message_id, accepted=response["status"] == 202)


class HttpScreeningProvider(LiveAdapter, ScreeningProvider):
    service_name = "screening"

    def __init__(self, settings: IntegrationSettings, retry_sleep: Optional[SleepFn] = None):
        if not settings.screening_api_url:
            raise ValueError("SCREENING_API_URL is required for live screening")
        super().__init__(settings, retry_sleep)

    async def screen_subject(self, subject_id, full_name=None, country=None):
        headers = {}
        if self.settings.screening_api_key:
            headers["Authorization"] = f"Bearer {self.settings.screening_api_key}"
        request = {"subject_id": subject_id, "full_name": full_name, "country": country}

        async def attempt():
            return await self._request(
                f"{self.settings.screening_api_url.rstrip('/')}/screen", headers, json_body=request
            )

        response = await self._with_retry("screening", attempt)
        body = response["body"]
        return ScreeningResult(
            subject_id=subject_id,
            sanctions_hit=bool(body.get("sanctions_hit")),
            pep_hit=bool(body.get("pep_hit")),
            reference=str(body.get("reference", "")),
            matches=list(body.get("matches") or []),
        )


# ============================================================================
# FACTORIES
# ============================================================================

def build_payment_gateway(settings: IntegrationSettings) -> PaymentGateway:
    return StripePaymentGateway(settings) if settings.is_live else MockPaymentGateway()


def build_email_provider(settings: IntegrationSettings) -> EmailProvider:
    return SendGridEmailProvider(settings) if settings.is_live else MockEmailProvider()


def build_screening_provider(settings: IntegrationSettings) -> ScreeningProvider:
    return HttpScreeningProvider(settings) if settings.is_live else MockScreeningProvider()


@dataclass
class ExternalServices:
    """The three collaborators, resolved once at startup"""

    payments: PaymentGateway
    email: EmailProvider
    screening: ScreeningProvider

    @classmethod
    def from_settings(cls, settings: IntegrationSettings) -> "ExternalServices":
        services = cls(
            payments=build_payment_gateway(settings),
            email=build_email_provider(settings),
            screening=build_screening_provider(settings),
        )
        logger.info(f"🔌 EXTERNAL_SERVICES: mode={settings.mode}")
        return services
