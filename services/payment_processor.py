"""
Payment provider boundary.

PaymentProcessor is the interface the escrow service drives; the Stripe
implementation talks to the provider's REST API with form-encoded requests.
Provider errors surface as PaymentProcessorError and are never retried here.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

import requests

from config import Config
from utils.fee_calculator import FeeCalculator

logger = logging.getLogger(__name__)


class PaymentProcessorError(Exception):
    """Raised when the payment provider rejects or fails a request"""

    def __init__(self, message: str, provider_code: Optional[str] = None):
        super().__init__(message)
        self.provider_code = provider_code


@dataclass
class PaymentIntentRecord:
    id: str
    amount: Decimal
    currency: str
    status: str
    client_secret: Optional[str] = None


@dataclass
class TransferRecord:
    id: str
    amount: Decimal
    currency: str
    destination: str


@dataclass
class RefundRecord:
    id: str
    amount: Decimal
    status: str


class PaymentProcessor(ABC):
    """Operations the escrow workflow needs from a payment provider"""

    @abstractmethod
    def create_payment_intent(
        self, amount: Decimal, currency: str, metadata: Dict[str, str], description: str = ""
    ) -> PaymentIntentRecord:
        raise NotImplementedError

    @abstractmethod
    def transfer_to_seller(
        self, amount: Decimal, currency: str, destination_account: str, metadata: Dict[str, str]
    ) -> TransferRecord:
        raise NotImplementedError

    @abstractmethod
    def refund_payment(
        self, payment_intent_id: str, amount: Decimal, currency: str, reason: Optional[str] = None
    ) -> RefundRecord:
        raise NotImplementedError


class StripePaymentProcessor(PaymentProcessor):
    """Stripe Connect: charges land on the platform, payouts are transfers"""

    def __init__(self, secret_key: Optional[str] = None, api_base: Optional[str] = None,
                 timeout: Optional[int] = None):
        self.secret_key = secret_key or Config.STRIPE_SECRET_KEY
        self.api_base = (api_base or Config.STRIPE_API_BASE).rstrip("/")
        self.timeout = timeout or Config.PAYMENT_API_TIMEOUT_SECONDS

        if not self.secret_key:
            raise ValueError("Stripe secret key not found in environment variables")

    def _post(self, endpoint: str, data: Dict) -> Dict:
        url = f"{self.api_base}/{endpoint.lstrip('/')}"
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        try:
            response = requests.post(url, data=data, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"❌ STRIPE_HTTP_ERROR: {endpoint} error={e}")
            raise PaymentProcessorError(f"Payment provider unreachable: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            error = body.get("error", {}) if isinstance(body, dict) else {}
            message = error.get("message") or f"HTTP {response.status_code}"
            logger.error(f"❌ STRIPE_API_ERROR: {endpoint} status={response.status_code} message={message}")
            raise PaymentProcessorError(message, provider_code=error.get("code"))

        return body

    @staticmethod
    def _metadata_fields(metadata: Dict[str, str]) -> Dict[str, str]:
        return {f"metadata[{key}]": str(value) for key, value in metadata.items() if value is not None}

    def create_payment_intent(self, amount, currency, metadata, description=""):
        data = {
            "amount": FeeCalculator.to_minor_units(amount, currency),
            "currency": currency.lower(),
            "description": description,
            "automatic_payment_methods[enabled]": "true",
            **self._metadata_fields(metadata),
        }
        body = self._post("payment_intents", data)
        logger.info(f"✅ STRIPE_INTENT_CREATED: {body.get('id')} amount={amount} {currency}")
        return PaymentIntentRecord(
            id=body["id"],
            amount=FeeCalculator.from_minor_units(body.get("amount", 0), currency),
            currency=currency.upper(),
            status=body.get("status", "requires_payment_method"),
            client_secret=body.get("client_secret"),
        )

    def transfer_to_seller(self, amount, currency, destination_account, metadata):
        data = {
            "amount": FeeCalculator.to_minor_units(amount, currency),
            "currency": currency.lower(),
            "destination": destination_account,
            **self._metadata_fields(metadata),
        }
        body = self._post("transfers", data)
        logger.info(f"✅ STRIPE_TRANSFER_CREATED: {body.get('id')} amount={amount} {currency}")
        return TransferRecord(
            id=body["id"],
            amount=FeeCalculator.from_minor_units(body.get("amount", 0), currency),
            currency=currency.upper(),
            destination=destination_account,
        )

    def refund_payment(self, payment_intent_id, amount, currency, reason=None):
        data = {
            "payment_intent": payment_intent_id,
            "amount": FeeCalculator.to_minor_units(amount, currency),
        }
        if reason:
            data["metadata[reason]"] = reason
        body = self._post("refunds", data)
        logger.info(f"✅ STRIPE_REFUND_CREATED: {body.get('id')} intent={payment_intent_id} amount={amount}")
        return RefundRecord(
            id=body["id"],
            amount=FeeCalculator.from_minor_units(body.get("amount", 0), currency),
            status=body.get("status", "pending"),
        )
