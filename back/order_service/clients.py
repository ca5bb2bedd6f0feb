"""
Clients for the services this one depends on.

The engine only sees the abstract classes; tests swap in fakes.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

import stripe
from pydantic import ValidationError as PayloadError

from .bus import RedisBus
from .errors import UpstreamUnavailable
from .models import Product
from .settings import Settings

logger = logging.getLogger(__name__)


class ProductCatalogClient(ABC):
    @abstractmethod
    async def validate_products(self, ids: list[int], business_id: str) -> list[Product]:
        """Priced products for exactly these ids (used when creating orders)."""
        raise NotImplementedError

    @abstractmethod
    async def get_products_by_ids(self, ids: list[int], business_id: str) -> list[Product]:
        raise NotImplementedError

    @abstractmethod
    async def get_available_products_by_ids(self, ids: list[int], business_id: str) -> list[Product]:
        raise NotImplementedError


class PaymentGatewayClient(ABC):
    @abstractmethod
    async def create_payment_preference(self, summary: dict) -> Any:
        """Return an opaque preference token for a ready-to-pay checkout."""
        raise NotImplementedError


def _parse_products(pattern: str, response: Any) -> list[Product]:
    if response is None:
        return []
    if not isinstance(response, list):
        raise UpstreamUnavailable(f"{pattern} returned {type(response).__name__}, expected a list")
    try:
        return [Product.model_validate(item) for item in response]
    except PayloadError as e:
        raise UpstreamUnavailable(f"{pattern} returned malformed products: {e}") from e


class BusProductCatalog(ProductCatalogClient):
    def __init__(self, bus: RedisBus):
        self.bus = bus

    async def validate_products(self, ids: list[int], business_id: str) -> list[Product]:
        response = await self.bus.request("validate_products", {"ids": ids, "business_id": business_id})
        return _parse_products("validate_products", response)

    async def get_products_by_ids(self, ids: list[int], business_id: str) -> list[Product]:
        response = await self.bus.request(
            "get_products_by_ids", {"product_ids": ids, "business_id": business_id}
        )
        return _parse_products("get_products_by_ids", response)

    async def get_available_products_by_ids(self, ids: list[int], business_id: str) -> list[Product]:
        response = await self.bus.request(
            "get_available_products_by_ids", {"product_ids": ids, "business_id": business_id}
        )
        return _parse_products("get_available_products_by_ids", response)


class BusPaymentGateway(PaymentGatewayClient):
    def __init__(self, bus: RedisBus):
        self.bus = bus

    async def create_payment_preference(self, summary: dict) -> Any:
        return await self.bus.request("create.payment.preference", summary)


class StripePaymentGateway(PaymentGatewayClient):
    """Creates a Stripe Checkout Session as the payment preference."""

    def __init__(
        self,
        secret_key: str,
        currency: str = "mxn",
        success_url: str = "",
        cancel_url: str = "",
    ):
        self.secret_key = secret_key
        self.currency = currency
        self.success_url = success_url
        self.cancel_url = cancel_url

    def _line_items(self, items: list[dict]) -> list[dict]:
        line_items = []
        for item in items:
            # Stripe amounts are integer cents
            unit_amount = int(
                (Decimal(str(item["price"])) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
            )
            line_items.append({
                "price_data": {
                    "currency": self.currency,
                    "product_data": {"name": item.get("name") or f"Product {item.get('id')}"},
                    "unit_amount": unit_amount,
                },
                "quantity": item["quantity"],
            })
        return line_items

    async def create_payment_preference(self, summary: dict) -> Any:
        if not self.secret_key:
            raise UpstreamUnavailable("Stripe not configured")

        order_id = summary["order_id"]
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                mode="payment",
                line_items=self._line_items(summary["items"]),
                success_url=self.success_url,
                cancel_url=self.cancel_url,
                metadata={
                    "order_id": str(order_id),
                    "business_id": str(summary["business_id"]),
                },
                api_key=self.secret_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout session failed for order #{order_id}: {e}")
            raise UpstreamUnavailable(f"Stripe error: {e}") from e

        return {"id": session.id, "url": session.url}


def build_payment_gateway(settings: Settings, bus: RedisBus) -> PaymentGatewayClient:
    if settings.payment_gateway == "stripe":
        return StripePaymentGateway(
            secret_key=settings.stripe_secret_key,
            currency=settings.stripe_currency,
            success_url=settings.stripe_success_url,
            cancel_url=settings.stripe_cancel_url,
        )
    return BusPaymentGateway(bus)
