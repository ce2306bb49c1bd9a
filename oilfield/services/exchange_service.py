"""
Auto-exchange orchestration.

A request moves ``pending -> executing -> completed`` or falls back to a
manual conversion record. Claim-tokens are only debited when a swap lands
within the slippage bound. Any failure after the request enters
``executing`` ends in exactly one fallback record.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Protocol, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from oilfield.core.clock import Clock, system_clock
from oilfield.core.exceptions import (
    OilfieldException, ValidationError, NotFoundError, StateConflictError,
    RateLimitError, FeatureDisabledError, InsufficientBalanceError,
    ExternalDependencyError, SlippageExceededError
)
from oilfield.models.base import quantize_amount
from oilfield.models.exchange import (
    ExchangeRequest, FallbackConversionRequest, ExchangeAuditLog, AutoExchangePreference,
    ExchangeStatus, FallbackStatus, AuditAction, MIN_SLIPPAGE_PERCENT, MAX_SLIPPAGE_PERCENT
)
from oilfield.services.config_provider import GameConfig
from oilfield.services.ledger import lock_ledger

logger = structlog.get_logger(__name__)

DEFAULT_MAX_DAILY_CLAIM_TOKENS = 10000
DEFAULT_SLIPPAGE_PERCENT = Decimal("1.0")
EXECUTION_TIMEOUT = timedelta(minutes=10)


@dataclass(frozen=True)
class SwapResult:
    """Realized outcome of a swap."""

    tx_reference: Optional[str]
    amount_received: Decimal


class SwapProvider(Protocol):
    async def swap(self, request: ExchangeRequest) -> SwapResult:
        ...


@dataclass
class ExecutionResult:
    request: ExchangeRequest
    fallback: Optional[FallbackConversionRequest] = None

    @property
    def status(self) -> str:
        return self.request.status


def parse_slippage(value) -> Decimal:
    try:
        slippage = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError("Invalid slippage tolerance", {"slippage": str(value)})
    if not slippage.is_finite() or not MIN_SLIPPAGE_PERCENT <= slippage <= MAX_SLIPPAGE_PERCENT:
        raise ValidationError(
            f"Slippage tolerance must be between {MIN_SLIPPAGE_PERCENT} and {MAX_SLIPPAGE_PERCENT} percent",
            {"slippage": str(value)}
        )
    return slippage


def _positive_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer", {name: value})
    return value


def _public_reason(error: Exception) -> str:
    if isinstance(error, OilfieldException):
        return error.message
    return "Exchange execution failed"


class ExchangeService:
    """Submission, execution and preferences for auto-exchange."""

    def __init__(
        self,
        db: AsyncSession,
        config: GameConfig,
        clock: Clock = system_clock,
        swap_provider: Optional[SwapProvider] = None
    ):
        self.db = db
        self.config = config
        self.clock = clock
        self.swap_provider = swap_provider
        self.logger = logger.bind(service="exchange_service")

    def _audit(self, player_id: int, action: AuditAction, request_id: Optional[int], details: Dict[str, Any]) -> None:
        self.db.add(ExchangeAuditLog(
            player_id=player_id,
            action=action.value,
            request_id=request_id,
            details=details,
            logged_at=self.clock.now(),
        ))

    # Preferences

    async def _get_preference(self, player_id: int) -> Optional[AutoExchangePreference]:
        return await self.db.get(AutoExchangePreference, player_id)

    async def get_preferences(self, player_id: int) -> AutoExchangePreference:
        """Stored preferences, or unsaved defaults."""
        preference = await self._get_preference(player_id)
        if preference is None:
            preference = AutoExchangePreference(
                player_id=player_id,
                enabled=False,
                max_daily_claim_tokens=DEFAULT_MAX_DAILY_CLAIM_TOKENS,
                default_slippage_percent=DEFAULT_SLIPPAGE_PERCENT,
            )
        return preference

    async def update_preferences(
        self,
        player_id: int,
        enabled: Optional[bool] = None,
        max_daily_claim_tokens: Optional[int] = None,
        default_slippage_percent=None
    ) -> AutoExchangePreference:
        changes: Dict[str, Any] = {}
        if enabled is not None:
            changes["enabled"] = bool(enabled)
        if max_daily_claim_tokens is not None:
            changes["max_daily_claim_tokens"] = _positive_int(max_daily_claim_tokens, "max_daily_claim_tokens")
        if default_slippage_percent is not None:
            changes["default_slippage_percent"] = parse_slippage(default_slippage_percent)

        preference = await self._get_preference(player_id)
        if preference is None:
            preference = await self.get_preferences(player_id)
            self.db.add(preference)

        for key, value in changes.items():
            setattr(preference, key, value)

        self._audit(
            player_id,
            AuditAction.PREFERENCES_UPDATED,
            None,
            {key: str(value) if isinstance(value, Decimal) else value for key, value in changes.items()}
        )
        await self.db.flush()

        self.logger.info("Auto-exchange preferences updated", player_id=player_id, fields=sorted(changes))
        return preference

    # Submission

    async def _claim_tokens_requested_since(self, player_id: int, since: datetime) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.sum(ExchangeRequest.claim_token_amount), 0))
            .where(
                ExchangeRequest.player_id == player_id,
                ExchangeRequest.requested_at >= since,
                ExchangeRequest.status != ExchangeStatus.FALLBACK.value
            )
        )
        return int(result.scalar() or 0)

    async def submit_exchange_request(self, player_id: int, claim_token_amount, slippage=None) -> ExchangeRequest:
        """Create a pending request. Nothing is debited here."""
        amount = _positive_int(claim_token_amount, "claim_token_amount")
        max_amount = self.config.auto_exchange.max_claim_tokens
        if amount > max_amount:
            raise ValidationError(
                f"Maximum auto-exchange request is {max_amount} claim-tokens",
                {"claim_token_amount": amount, "maximum": max_amount}
            )
        slippage_percent = parse_slippage(slippage) if slippage is not None else None

        if not self.config.auto_exchange.enabled:
            raise FeatureDisabledError("auto_exchange")

        preference = await self._get_preference(player_id)
        if preference is None or not preference.enabled:
            raise FeatureDisabledError("auto_exchange", "Auto-exchange is disabled for this player")
        if slippage_percent is None:
            slippage_percent = parse_slippage(preference.default_slippage_percent)

        now = self.clock.now()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        used_today = await self._claim_tokens_requested_since(player_id, day_start)
        if used_today + amount > preference.max_daily_claim_tokens:
            raise RateLimitError(
                "Daily auto-exchange limit reached",
                {
                    "max_daily_claim_tokens": preference.max_daily_claim_tokens,
                    "used_today": used_today,
                }
            )

        target = quantize_amount(amount * self.config.cashout.exchange_rate)
        if target <= 0:
            raise ValidationError("Amount is too small to exchange", {"claim_token_amount": amount})

        request = ExchangeRequest(
            player_id=player_id,
            claim_token_amount=amount,
            target_amount=target,
            slippage_tolerance_percent=slippage_percent,
            status=ExchangeStatus.PENDING.value,
            retry_count=0,
            requested_at=now,
        )
        self.db.add(request)
        await self.db.flush()

        self._audit(player_id, AuditAction.EXCHANGE_REQUESTED, request.id, {
            "claim_token_amount": amount,
            "target_amount": str(target),
            "slippage_tolerance_percent": str(slippage_percent),
        })
        await self.db.flush()

        self.logger.info(
            "Exchange request submitted",
            player_id=player_id,
            request_id=request.id,
            claim_token_amount=amount,
            target_amount=str(target)
        )
        return request

    # Execution

    async def _get_request_for_update(self, request_id: int) -> ExchangeRequest:
        result = await self.db.execute(
            select(ExchangeRequest)
            .where(ExchangeRequest.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise NotFoundError(f"Exchange request not found: {request_id}", {"request_id": request_id})
        return request

    def _is_abandoned(self, request: ExchangeRequest) -> bool:
        started = request.execution_started_at
        return started is None or self.clock.now() - started >= EXECUTION_TIMEOUT

    async def execute_exchange_request(
        self,
        request_id: int,
        tx_reference: Optional[str] = None,
        amount_received=None
    ) -> ExecutionResult:
        """
        Execute a pending request.

        With ``amount_received`` the realized swap is recorded as given,
        otherwise the configured swap provider is called. The ``executing``
        transition is committed before the swap so a crash is visible. A
        request left in ``executing`` for longer than ``EXECUTION_TIMEOUT``
        is driven to fallback instead of executed again.
        """
        request = await self._get_request_for_update(request_id)

        if request.status == ExchangeStatus.EXECUTING.value and self._is_abandoned(request):
            self.logger.warning(
                "Abandoned exchange execution",
                request_id=request_id,
                started_at=request.execution_started_at
            )
            request, fallback = await self._settle_fallback(
                request_id, ExternalDependencyError("Exchange execution was interrupted")
            )
            return ExecutionResult(request=request, fallback=fallback)

        if request.status != ExchangeStatus.PENDING.value:
            raise StateConflictError(
                "Exchange request is not pending",
                {"request_id": request_id, "status": request.status}
            )

        realized: Optional[SwapResult] = None
        if amount_received is not None:
            try:
                realized = SwapResult(tx_reference=tx_reference, amount_received=Decimal(str(amount_received)))
            except InvalidOperation:
                raise ValidationError("Invalid amount received", {"amount_received": str(amount_received)})
            if not realized.amount_received.is_finite() or realized.amount_received < 0:
                raise ValidationError("Invalid amount received", {"amount_received": str(amount_received)})

        request.status = ExchangeStatus.EXECUTING.value
        request.execution_started_at = self.clock.now()
        await self.db.commit()

        try:
            async with self.db.begin_nested():
                await self._complete(request, realized)
        except Exception as e:
            self.logger.warning("Exchange execution failed", request_id=request_id, error=str(e))
            request, fallback = await self._settle_fallback(request_id, e)
            return ExecutionResult(request=request, fallback=fallback)
        except BaseException as e:
            # Cancellation mid-swap: record the fallback, then let it propagate
            self.logger.warning("Exchange execution interrupted", request_id=request_id, error=repr(e))
            await self._settle_fallback(request_id, ExternalDependencyError("Exchange execution was interrupted"))
            raise

        return ExecutionResult(request=request)

    async def _settle_fallback(
        self, request_id: int, error: Exception
    ) -> Tuple[ExchangeRequest, FallbackConversionRequest]:
        """
        Move an executing request to fallback and commit. A failed attempt is
        rolled back and retried once in a fresh transaction.
        """
        try:
            request = await self._get_request_for_update(request_id)
            fallback = await self._fallback(request, error)
            await self.db.commit()
            return request, fallback
        except Exception as e:
            self.logger.error("Exchange fallback failed, retrying", request_id=request_id, error=str(e))
            await self.db.rollback()

        request = await self._get_request_for_update(request_id)
        fallback = await self._fallback(request, error)
        await self.db.commit()
        return request, fallback

    async def _complete(self, request: ExchangeRequest, realized: Optional[SwapResult]) -> None:
        ledger = await lock_ledger(self.db, request.player_id, self.clock)
        if ledger.claim_tokens < request.claim_token_amount:
            raise InsufficientBalanceError("claim_tokens", request.claim_token_amount, ledger.claim_tokens)

        if realized is None:
            if self.swap_provider is None:
                raise ExternalDependencyError("No swap provider configured")
            realized = await self.swap_provider.swap(request)

        minimum = request.minimum_acceptable
        if realized.amount_received < minimum:
            raise SlippageExceededError(realized.amount_received, minimum)

        ledger.claim_tokens = ledger.claim_tokens - request.claim_token_amount
        request.status = ExchangeStatus.COMPLETED.value
        request.amount_received = quantize_amount(realized.amount_received)
        request.tx_reference = realized.tx_reference
        request.error_message = None

        self._audit(request.player_id, AuditAction.EXCHANGE_EXECUTED, request.id, {
            "claim_token_amount": request.claim_token_amount,
            "amount_received": str(request.amount_received),
            "tx_reference": realized.tx_reference,
        })
        await self.db.flush()

        self.logger.info(
            "Exchange executed",
            request_id=request.id,
            player_id=request.player_id,
            amount_received=str(request.amount_received)
        )

    async def _fallback(self, request: ExchangeRequest, error: Exception) -> FallbackConversionRequest:
        reason = _public_reason(error)
        now = self.clock.now()

        fallback = FallbackConversionRequest(
            exchange_request_id=request.id,
            player_id=request.player_id,
            claim_token_amount=request.claim_token_amount,
            reason=reason,
            status=FallbackStatus.PENDING.value,
        )
        self.db.add(fallback)

        request.status = ExchangeStatus.FALLBACK.value
        request.error_message = reason
        request.retry_count = (request.retry_count or 0) + 1
        request.last_retry_at = now
        await self.db.flush()

        self._audit(request.player_id, AuditAction.EXCHANGE_FALLBACK, request.id, {
            "reason": reason,
            "fallback_request_id": fallback.id,
        })
        await self.db.flush()

        self.logger.info(
            "Exchange fallback initiated",
            request_id=request.id,
            player_id=request.player_id,
            fallback_id=fallback.id,
            reason=reason
        )
        return fallback

    # Listings

    async def get_request(self, request_id: int, player_id: Optional[int] = None) -> ExchangeRequest:
        request = await self.db.get(ExchangeRequest, request_id)
        if request is None or (player_id is not None and request.player_id != player_id):
            raise NotFoundError(f"Exchange request not found: {request_id}", {"request_id": request_id})
        return request

    async def list_requests(self, player_id: int, limit: int = 50, offset: int = 0) -> List[ExchangeRequest]:
        result = await self.db.execute(
            select(ExchangeRequest)
            .where(ExchangeRequest.player_id == player_id)
            .order_by(ExchangeRequest.requested_at.desc(), ExchangeRequest.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def list_fallbacks(self, player_id: int) -> List[FallbackConversionRequest]:
        result = await self.db.execute(
            select(FallbackConversionRequest)
            .where(FallbackConversionRequest.player_id == player_id)
            .order_by(FallbackConversionRequest.id.desc())
        )
        return list(result.scalars().all())

    async def list_audit_log(self, player_id: int, limit: int = 100) -> List[ExchangeAuditLog]:
        result = await self.db.execute(
            select(ExchangeAuditLog)
            .where(ExchangeAuditLog.player_id == player_id)
            .order_by(ExchangeAuditLog.logged_at.desc(), ExchangeAuditLog.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
