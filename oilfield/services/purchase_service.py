"""
Fuel purchases paid in external currency.

A purchase is initiated with an opaque reference the wallet pays against,
then confirmed once the payment verifier reports the transaction as mined.
Confirmed purchases are the revenue a cashout round observes.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Protocol

import aiohttp
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from oilfield.core.clock import Clock, system_clock
from oilfield.core.config import settings
from oilfield.core.exceptions import (
    ValidationError, NotFoundError, ExternalDependencyError, ConfigurationError
)
from oilfield.models.base import quantize_amount
from oilfield.models.purchase import FuelPurchase, PurchaseStatus
from oilfield.services.config_provider import GameConfig
from oilfield.services.ledger import lock_ledger

logger = structlog.get_logger(__name__)

MAX_FUEL_PER_PURCHASE = Decimal("1000000")

# Transaction status reported once the payment is final on chain
MINED = "mined"
FAILED = "failed"


@dataclass(frozen=True)
class PaymentVerification:
    """Normalized answer of the payment verifier."""

    status: str
    amount_paid: Optional[Decimal]
    reference: Optional[str]
    raw: Optional[Dict[str, Any]] = None


class PaymentVerifier(Protocol):
    async def verify(self, transaction_id: str) -> PaymentVerification:
        ...


class DeveloperPortalVerifier:
    """Looks payment transactions up in the wallet developer portal."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        app_id: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None
    ):
        self.api_url = (api_url or settings.payment_api_url).rstrip("/")
        self.app_id = app_id or settings.payment_app_id
        self.api_key = api_key or settings.payment_api_key
        self.timeout = timeout or settings.payment_timeout

    async def verify(self, transaction_id: str) -> PaymentVerification:
        if not self.app_id or not self.api_key:
            raise ConfigurationError("Payment verification credentials are not configured")

        url = f"{self.api_url}/{transaction_id}"
        params = {"app_id": self.app_id, "type": "payment"}
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    url,
                    params=params,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status != 200:
                        logger.warning(
                            "Payment verification rejected",
                            transaction_id=transaction_id,
                            status=response.status
                        )
                        raise ExternalDependencyError(
                            "Failed to verify transaction",
                            {"transaction_id": transaction_id}
                        )
                    data = await response.json()
        except asyncio.TimeoutError:
            logger.warning("Payment verification timeout", transaction_id=transaction_id)
            raise ExternalDependencyError(
                "Payment verification timed out",
                {"transaction_id": transaction_id}
            )
        except aiohttp.ClientError as e:
            logger.error("Payment verification unreachable", transaction_id=transaction_id, error=str(e))
            raise ExternalDependencyError(
                "Payment verification unavailable",
                {"transaction_id": transaction_id}
            )

        return self.normalize(data)

    @staticmethod
    def normalize(data: Dict[str, Any]) -> PaymentVerification:
        amount = data.get("input_token_amount") or data.get("amount")
        try:
            amount_paid = Decimal(str(amount)) if amount is not None else None
        except InvalidOperation:
            amount_paid = None
        return PaymentVerification(
            status=str(data.get("transaction_status") or "pending"),
            amount_paid=amount_paid,
            reference=data.get("reference"),
            raw=data,
        )


@dataclass
class ConfirmationResult:
    purchase: FuelPurchase
    status: str
    fuel_balance: Optional[Decimal] = None


class PurchaseService:
    """Initiates and confirms fuel purchases."""

    def __init__(
        self,
        db: AsyncSession,
        config: GameConfig,
        verifier: Optional[PaymentVerifier] = None,
        clock: Clock = system_clock
    ):
        self.db = db
        self.config = config
        self.verifier = verifier or DeveloperPortalVerifier()
        self.clock = clock
        self.logger = logger.bind(service="purchase_service")

    async def initiate_fuel_purchase(self, player_id: int, amount_currency) -> FuelPurchase:
        try:
            amount = Decimal(str(amount_currency))
        except InvalidOperation:
            raise ValidationError("Invalid purchase amount", {"amount": str(amount_currency)})
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Purchase amount must be positive", {"amount": str(amount)})

        amount = quantize_amount(amount)
        fuel_amount = quantize_amount(amount * self.config.pricing.fuel_per_currency)
        if fuel_amount <= 0:
            raise ValidationError("Purchase amount too small", {"amount": str(amount)})
        if fuel_amount > MAX_FUEL_PER_PURCHASE:
            raise ValidationError(
                f"Maximum fuel purchase is {MAX_FUEL_PER_PURCHASE}",
                {"fuel_amount": str(fuel_amount)}
            )

        purchase = FuelPurchase(
            player_id=player_id,
            reference=uuid.uuid4().hex,
            amount_currency=amount,
            fuel_amount=fuel_amount,
            status=PurchaseStatus.PENDING.value,
            initiated_at=self.clock.now(),
        )
        self.db.add(purchase)
        await self.db.flush()

        self.logger.info(
            "Fuel purchase initiated",
            player_id=player_id,
            purchase_id=purchase.id,
            amount_currency=str(amount),
            fuel_amount=str(fuel_amount)
        )
        return purchase

    async def confirm_fuel_purchase(
        self,
        player_id: int,
        reference: str,
        transaction_id: str
    ) -> ConfirmationResult:
        result = await self.db.execute(
            select(FuelPurchase)
            .where(FuelPurchase.reference == reference, FuelPurchase.player_id == player_id)
            .with_for_update()
        )
        purchase = result.scalar_one_or_none()
        if purchase is None:
            raise NotFoundError("Purchase not found", {"reference": reference})

        if purchase.status == PurchaseStatus.CONFIRMED.value:
            return ConfirmationResult(purchase=purchase, status=PurchaseStatus.CONFIRMED.value)

        verification = await self.verifier.verify(transaction_id)

        if verification.reference and verification.reference != reference:
            raise ValidationError("Reference mismatch", {"reference": reference})

        if verification.status == FAILED:
            purchase.status = PurchaseStatus.FAILED.value
            purchase.transaction_id = transaction_id
            purchase.verification = verification.raw
            await self.db.commit()
            self.logger.warning("Fuel purchase failed", purchase_id=purchase.id, transaction_id=transaction_id)
            raise ExternalDependencyError("Transaction failed", {"reference": reference})

        if verification.status != MINED:
            return ConfirmationResult(purchase=purchase, status=verification.status)

        if verification.amount_paid is not None and verification.amount_paid < purchase.amount_currency:
            raise ValidationError(
                "Paid amount is below the purchase amount",
                {"reference": reference, "amount_paid": str(verification.amount_paid)}
            )

        ledger = await lock_ledger(self.db, player_id, self.clock)
        ledger.fuel_currency = ledger.fuel_currency + purchase.fuel_amount

        purchase.status = PurchaseStatus.CONFIRMED.value
        purchase.transaction_id = transaction_id
        purchase.verification = verification.raw
        purchase.confirmed_at = self.clock.now()
        await self.db.flush()

        self.logger.info(
            "Fuel purchase confirmed",
            player_id=player_id,
            purchase_id=purchase.id,
            fuel_amount=str(purchase.fuel_amount)
        )
        return ConfirmationResult(
            purchase=purchase,
            status=PurchaseStatus.CONFIRMED.value,
            fuel_balance=ledger.fuel_currency
        )


async def observed_revenue(db: AsyncSession, window_start: datetime, window_end: datetime) -> Decimal:
    """Sum of confirmed purchase amounts inside ``[window_start, window_end]``."""
    result = await db.execute(
        select(func.coalesce(func.sum(FuelPurchase.amount_currency), 0))
        .where(
            FuelPurchase.status == PurchaseStatus.CONFIRMED.value,
            FuelPurchase.confirmed_at >= window_start,
            FuelPurchase.confirmed_at <= window_end,
        )
    )
    return quantize_amount(result.scalar() or 0)
