"""
Fuel purchase routes.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from oilfield.api.dependencies import get_database, get_purchase_service
from oilfield.api.schemas.game import (
    PurchaseInitiateRequest,
    PurchaseResponse,
    PurchaseConfirmRequest,
    PurchaseConfirmResponse,
)
from oilfield.auth import require_human
from oilfield.models.player import Player
from oilfield.services.purchase_service import PurchaseService


router = APIRouter()


@router.post(
    "/initiate",
    response_model=PurchaseResponse,
    summary="Initiate Fuel Purchase",
    description="Create a pending purchase and return the payment reference"
)
async def initiate_purchase(
    body: PurchaseInitiateRequest,
    player: Player = Depends(require_human),
    service: PurchaseService = Depends(get_purchase_service),
    db: AsyncSession = Depends(get_database)
):
    purchase = await service.initiate_fuel_purchase(player.id, body.amount_currency)
    await db.commit()
    return PurchaseResponse.model_validate(purchase, from_attributes=True)


@router.post(
    "/confirm",
    response_model=PurchaseConfirmResponse,
    summary="Confirm Fuel Purchase",
    description="Verify the payment transaction and credit fuel once it is mined"
)
async def confirm_purchase(
    body: PurchaseConfirmRequest,
    player: Player = Depends(require_human),
    service: PurchaseService = Depends(get_purchase_service),
    db: AsyncSession = Depends(get_database)
):
    result = await service.confirm_fuel_purchase(player.id, body.reference, body.transaction_id)
    await db.commit()
    return PurchaseConfirmResponse(
        reference=result.purchase.reference,
        status=result.status,
        fuel_balance=result.fuel_balance,
    )
