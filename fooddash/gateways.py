"""
Outbound gateways: SMS notifications and payouts.

The core only talks to the `Notifier` and `PayoutGateway` protocols; the
Semaphore/GCash classes are the production providers and the stub classes
stand in for them in development.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Protocol

import httpx

from .config import settings
from .errors import PayoutError
from .util import gen_id

logger = logging.getLogger(__name__)


# ----------------------
# Notifications
# ----------------------

NEW_DELIVERY_REQUEST = "new_delivery_request"
DRIVER_ASSIGNED = "driver_assigned"


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


class Notifier(Protocol):
    async def notify(self, contact: str, template_kind: str, payload: Dict[str, Any]) -> NotificationResult:
        ...


def render_message(template_kind: str, payload: Dict[str, Any], app_url: str | None = None) -> str:
    app_url = (app_url or settings.APP_URL).rstrip("/")
    if template_kind == NEW_DELIVERY_REQUEST:
        return (
            f"New delivery request! Order {payload['orderNumber']} from {payload['restaurantName']} "
            f"to {payload['deliveryAddress']}. Distance: {payload['distanceKm']}km. "
            f"Fee: ₱{payload['deliveryFee']}. Accept in app now!"
        )
    if template_kind == DRIVER_ASSIGNED:
        return (
            f"Driver {payload['driverName']} has been assigned to your order {payload['orderNumber']}. "
            f"Vehicle: {payload['vehicleType']} ({payload['vehicleNumber']}). "
            f"Track: {app_url}/track/{payload['orderId']}"
        )
    raise ValueError(f"unknown notification template {template_kind!r}")


def format_ph_number(phone: str) -> str:
    """Normalise a Philippine mobile number to +63XXXXXXXXXX."""
    cleaned = re.sub(r"\D", "", phone)
    if cleaned.startswith("0"):
        cleaned = "63" + cleaned[1:]
    elif cleaned.startswith("9"):
        cleaned = "63" + cleaned
    return "+" + cleaned


class SemaphoreNotifier:
    def __init__(
        self,
        api_key: str | None = None,
        sender_name: str | None = None,
        api_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.SEMAPHORE_API_KEY
        self.sender_name = sender_name or settings.SEMAPHORE_SENDER_NAME
        self.api_url = (api_url or settings.SEMAPHORE_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.NOTIFY_TIMEOUT_S
        self._transport = transport

    async def notify(self, contact: str, template_kind: str, payload: Dict[str, Any]) -> NotificationResult:
        body = {
            "apikey": self.api_key,
            "number": format_ph_number(contact),
            "message": render_message(template_kind, payload),
            "sendername": self.sender_name,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(f"{self.api_url}/messages", json=body)
            r.raise_for_status()
            data = r.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(f"Semaphore SMS error: {exc!r}")
            return NotificationResult(success=False, error=str(exc) or "SMS send failed")

        if isinstance(data, list) and data and isinstance(data[0], dict):
            return NotificationResult(success=True, message_id=str(data[0].get("message_id")))
        logger.error(f"Semaphore SMS unexpected response: {data!r}")
        return NotificationResult(success=False, error="Unexpected response from SMS provider")


class LoggingNotifier:
    """Development notifier: renders and logs instead of sending."""

    async def notify(self, contact: str, template_kind: str, payload: Dict[str, Any]) -> NotificationResult:
        logger.info(f"[sms to {contact}] {render_message(template_kind, payload)}")
        return NotificationResult(success=True, message_id=gen_id("sms"))


# ----------------------
# Payouts
# ----------------------


@dataclass(frozen=True)
class PayoutRecipient:
    account_type: str  # "bank_account" or "gcash_account"
    account_number: str
    account_name: str


@dataclass(frozen=True)
class PayoutResult:
    success: bool
    payout_id: str | None = None
    error: str | None = None


class PayoutGateway(Protocol):
    async def payout(self, reference_id: str, recipient: PayoutRecipient, amount: Decimal,
                     description: str, metadata: Dict[str, Any] | None = None) -> PayoutResult:
        ...


class GCashPayoutGateway:
    def __init__(
        self,
        api_url: str | None = None,
        app_id: str | None = None,
        app_secret: str | None = None,
        merchant_id: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = (api_url or settings.GCASH_API_URL).rstrip("/")
        self.app_id = app_id if app_id is not None else settings.GCASH_APP_ID
        self.app_secret = app_secret if app_secret is not None else settings.GCASH_APP_SECRET
        self.merchant_id = merchant_id if merchant_id is not None else settings.GCASH_MERCHANT_ID
        self.timeout = timeout if timeout is not None else settings.PAYOUT_TIMEOUT_S
        self._transport = transport

    async def _auth_token(self, client: httpx.AsyncClient) -> str:
        r = await client.post(
            f"{self.api_url}/oauth/token",
            json={
                "grant_type": "client_credentials",
                "client_id": self.app_id,
                "client_secret": self.app_secret,
            },
        )
        r.raise_for_status()
        data = r.json()
        if not isinstance(data, dict) or not data.get("access_token"):
            raise PayoutError(f"GCash token response malformed: {data!r}")
        return data["access_token"]

    async def payout(self, reference_id: str, recipient: PayoutRecipient, amount: Decimal,
                     description: str, metadata: Dict[str, Any] | None = None) -> PayoutResult:
        payload = {
            "merchant_id": self.merchant_id,
            "reference_id": reference_id,
            "recipient": {
                "type": recipient.account_type,
                "account_number": recipient.account_number,
                "account_name": recipient.account_name,
            },
            "amount": {"value": f"{amount:.2f}", "currency": "PHP"},
            "description": description,
            "metadata": metadata or {},
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                token = await self._auth_token(client)
                r = await client.post(
                    f"{self.api_url}/payouts",
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                )
            r.raise_for_status()
            data = r.json()
            if not isinstance(data, dict) or not data.get("payout_id"):
                raise PayoutError(f"GCash payout response malformed: {data!r}")
        except (httpx.HTTPError, ValueError, PayoutError) as exc:
            logger.error(f"GCash payout {reference_id} failed: {exc!r}")
            return PayoutResult(success=False, error="Payout processing failed")

        return PayoutResult(success=True, payout_id=str(data["payout_id"]))


class StubPayoutGateway:
    """Accepts every payout; used until provider credentials exist."""

    async def payout(self, reference_id: str, recipient: PayoutRecipient, amount: Decimal,
                     description: str, metadata: Dict[str, Any] | None = None) -> PayoutResult:
        logger.info(f"[payout stub] {reference_id}: {amount} to {recipient.account_name} ({recipient.account_type})")
        return PayoutResult(success=True, payout_id=f"po_{reference_id}")
