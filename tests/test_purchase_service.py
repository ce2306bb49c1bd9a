"""
Test fuel purchases and payment verification handling.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from oilfield.core.exceptions import (
    ValidationError, NotFoundError, ExternalDependencyError, ConfigurationError
)
from oilfield.models.player import PlayerLedger
from oilfield.models.purchase import FuelPurchase
from oilfield.services.purchase_service import (
    PurchaseService, PaymentVerification, DeveloperPortalVerifier, observed_revenue
)


class StubVerifier:
    def __init__(self, status="mined", amount_paid=None, reference=None):
        self.status = status
        self.amount_paid = amount_paid
        self.reference = reference
        self.calls = 0

    async def verify(self, transaction_id):
        self.calls += 1
        return PaymentVerification(
            status=self.status,
            amount_paid=self.amount_paid,
            reference=self.reference,
            raw={"transaction_id": transaction_id, "transaction_status": self.status},
        )


async def _fuel(session, player_id):
    result = await session.execute(
        select(PlayerLedger).where(PlayerLedger.player_id == player_id).execution_options(populate_existing=True)
    )
    return result.scalar_one().fuel_currency


@pytest.mark.asyncio
async def test_initiate_purchase(session, config, clock, make_player):
    player = await make_player()

    purchase = await PurchaseService(session, config, StubVerifier(), clock).initiate_fuel_purchase(
        player.id, Decimal("2")
    )

    assert purchase.status == "pending"
    assert purchase.fuel_amount == Decimal("2000")
    assert len(purchase.reference) == 32
    assert purchase.initiated_at == clock.now()


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1"), "ten", Decimal("1001")])
async def test_initiate_rejects_bad_amounts(session, config, clock, make_player, amount):
    player = await make_player()

    with pytest.raises(ValidationError):
        await PurchaseService(session, config, StubVerifier(), clock).initiate_fuel_purchase(player.id, amount)


@pytest.mark.asyncio
async def test_confirm_mined_purchase_credits_fuel_once(session, config, clock, make_player):
    player = await make_player(fuel=Decimal("5"))
    verifier = StubVerifier(amount_paid=Decimal("2"))
    service = PurchaseService(session, config, verifier, clock)
    purchase = await service.initiate_fuel_purchase(player.id, Decimal("2"))

    result = await service.confirm_fuel_purchase(player.id, purchase.reference, "tx-1")
    await session.commit()

    assert result.status == "confirmed"
    assert result.fuel_balance == Decimal("2005")
    assert result.purchase.transaction_id == "tx-1"
    assert result.purchase.confirmed_at == clock.now()

    again = await service.confirm_fuel_purchase(player.id, purchase.reference, "tx-1")
    assert again.status == "confirmed"
    assert verifier.calls == 1
    assert await _fuel(session, player.id) == Decimal("2005")


@pytest.mark.asyncio
async def test_confirm_pending_transaction(session, config, clock, make_player):
    player = await make_player()
    service = PurchaseService(session, config, StubVerifier(status="pending"), clock)
    purchase = await service.initiate_fuel_purchase(player.id, Decimal("1"))

    result = await service.confirm_fuel_purchase(player.id, purchase.reference, "tx-1")

    assert result.status == "pending"
    assert result.purchase.status == "pending"
    assert await _fuel(session, player.id) == Decimal("0")


@pytest.mark.asyncio
async def test_confirm_failed_transaction(session, config, clock, make_player):
    player = await make_player()
    service = PurchaseService(session, config, StubVerifier(status="failed"), clock)
    purchase = await service.initiate_fuel_purchase(player.id, Decimal("1"))
    await session.commit()

    with pytest.raises(ExternalDependencyError):
        await service.confirm_fuel_purchase(player.id, purchase.reference, "tx-1")
    await session.rollback()

    stored = await session.get(FuelPurchase, purchase.id, populate_existing=True)
    assert stored.status == "failed"


@pytest.mark.asyncio
async def test_confirm_reference_mismatch(session, config, clock, make_player):
    player = await make_player()
    service = PurchaseService(session, config, StubVerifier(reference="someone-else"), clock)
    purchase = await service.initiate_fuel_purchase(player.id, Decimal("1"))

    with pytest.raises(ValidationError):
        await service.confirm_fuel_purchase(player.id, purchase.reference, "tx-1")


@pytest.mark.asyncio
async def test_confirm_underpaid(session, config, clock, make_player):
    player = await make_player()
    service = PurchaseService(session, config, StubVerifier(amount_paid=Decimal("0.5")), clock)
    purchase = await service.initiate_fuel_purchase(player.id, Decimal("1"))

    with pytest.raises(ValidationError):
        await service.confirm_fuel_purchase(player.id, purchase.reference, "tx-1")


@pytest.mark.asyncio
async def test_confirm_other_players_purchase(session, config, clock, make_player):
    buyer = await make_player()
    other = await make_player()
    service = PurchaseService(session, config, StubVerifier(), clock)
    purchase = await service.initiate_fuel_purchase(buyer.id, Decimal("1"))

    with pytest.raises(NotFoundError):
        await service.confirm_fuel_purchase(other.id, purchase.reference, "tx-1")


@pytest.mark.asyncio
async def test_observed_revenue_counts_confirmed_purchases_in_window(session, config, clock, make_player):
    player = await make_player()
    service = PurchaseService(session, config, StubVerifier(), clock)
    start = clock.now()

    for amount in (Decimal("1.5"), Decimal("2.5")):
        purchase = await service.initiate_fuel_purchase(player.id, amount)
        await service.confirm_fuel_purchase(player.id, purchase.reference, f"tx-{amount}")
        clock.advance(hours=1)
    await service.initiate_fuel_purchase(player.id, Decimal("7"))

    assert await observed_revenue(session, start, clock.now()) == Decimal("4")
    assert await observed_revenue(session, start + timedelta(minutes=30), clock.now()) == Decimal("2.5")


def test_normalize_developer_portal_payload():
    verification = DeveloperPortalVerifier.normalize({
        "transaction_status": "mined",
        "input_token_amount": "1.25",
        "reference": "abc",
    })

    assert verification.status == "mined"
    assert verification.amount_paid == Decimal("1.25")
    assert verification.reference == "abc"


def test_normalize_missing_fields():
    verification = DeveloperPortalVerifier.normalize({})

    assert verification.status == "pending"
    assert verification.amount_paid is None


@pytest.mark.asyncio
async def test_verifier_requires_credentials(monkeypatch):
    from oilfield.core.config import settings

    monkeypatch.setattr(settings, "payment_app_id", None)
    monkeypatch.setattr(settings, "payment_api_key", None)

    with pytest.raises(ConfigurationError):
        await DeveloperPortalVerifier(api_url="http://payments.test").verify("tx-1")
