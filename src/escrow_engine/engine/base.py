"""Shared plumbing for engine services."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from escrow_engine.assets import Asset, parse_asset
from escrow_engine.domain import AuditAction, PartyRole
from escrow_engine.engine.errors import (
    DealNotFoundError,
    DealValidationError,
    ErrorKind,
    EscrowError,
    NotAuthorizedError,
)
from escrow_engine.engine.events import DealEvent
from escrow_engine.engine.results import OperationResult
from escrow_engine.storage.repos import AuditRepository, DealDTO, DealRepository, UserDTO, UserRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_engine.config import Settings
    from escrow_engine.engine.events import EventPublisher
    from escrow_engine.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def coerce_amount(amount: Decimal | str | int) -> Decimal:
    """Parse a user-supplied amount without going through binary floats."""
    if isinstance(amount, float):
        raise DealValidationError("amount must be a Decimal, str or int, not float")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount).strip())
    except InvalidOperation as e:
        raise DealValidationError(f"invalid amount: {amount!r}") from e
    if not value.is_finite():
        raise DealValidationError(f"invalid amount: {amount!r}")
    return value


def coerce_asset(asset: Asset | str) -> Asset:
    try:
        return parse_asset(asset)
    except ValueError as e:
        raise DealValidationError(str(e), kind=ErrorKind.INVALID_ASSET) from e


def coerce_role(role: PartyRole | str) -> PartyRole:
    if isinstance(role, PartyRole):
        return role
    try:
        return PartyRole(str(role).upper())
    except ValueError as e:
        raise DealValidationError(f"unknown role: {role!r}", kind=ErrorKind.INVALID_PARTICIPANTS) from e


class EngineService:
    """Base for services whose public operations return ``OperationResult``.

    Subclasses implement private coroutines that raise :class:`EscrowError`;
    :meth:`_run` is the single boundary that turns exceptions into results.
    """

    def __init__(
        self,
        db: DatabaseManager,
        settings: Settings,
        *,
        publisher: EventPublisher | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._db = db
        self._settings = settings
        self._publisher = publisher
        self._clock = clock or utc_now

    def _now(self) -> datetime:
        return self._clock()

    def is_admin(self, user_ref: str | None) -> bool:
        return user_ref is not None and user_ref in self._settings.admin.ids

    async def _run(self, operation: str, action: Callable[[], Awaitable[OperationResult[T]]]) -> OperationResult[T]:
        try:
            return await action()
        except NotAuthorizedError as e:
            await self._record_denied(operation, e)
            return OperationResult.from_error(e)
        except EscrowError as e:
            if e.partial_effect:
                logger.critical("%s left a partial effect: %s", operation, e)
            else:
                logger.info("%s rejected (%s): %s", operation, e.kind.value, e)
            return OperationResult.from_error(e)
        except SQLAlchemyError as e:
            logger.error("%s failed on persistence: %s", operation, e)
            return OperationResult.fail(ErrorKind.PERSISTENCE_ERROR, "persistence error")
        except Exception:
            logger.exception("Unexpected error in %s", operation)
            return OperationResult.fail(ErrorKind.INTERNAL_ERROR, "internal error")

    async def _record_denied(self, operation: str, error: NotAuthorizedError) -> None:
        logger.warning("Access denied: %s on deal %s by %s", operation, error.deal_id, error.requester_ref)
        try:
            async with self._db.get_async_session() as session:
                user = None
                if error.requester_ref is not None:
                    user = await UserRepository(session).get_by_external_id(error.requester_ref)
                await AuditRepository(session).append(
                    AuditAction.ACCESS_DENIED,
                    deal_id=error.deal_id,
                    user_id=user.id if user else None,
                    details={"operation": operation, "requester": error.requester_ref},
                )
        except SQLAlchemyError as e:
            logger.error("Failed to audit denied %s: %s", operation, e)

    async def _publish(self, *events: DealEvent) -> None:
        if self._publisher is None or not events:
            return
        try:
            await self._publisher.publish(events)
        except Exception as e:
            logger.warning("Event delivery failed: %s", e)

    @staticmethod
    async def _load_deal(session: AsyncSession, deal_id: int) -> DealDTO:
        deal = await DealRepository(session).get(deal_id)
        if deal is None:
            raise DealNotFoundError(f"deal {deal_id} not found")
        return deal

    async def _requester(self, session: AsyncSession, requester_ref: str | None) -> UserDTO | None:
        if requester_ref is None:
            return None
        return await UserRepository(session).get_by_external_id(requester_ref)

    async def _authorize(
        self,
        session: AsyncSession,
        deal: DealDTO,
        requester_ref: str | None,
        *,
        roles: Sequence[PartyRole] = (PartyRole.BUYER, PartyRole.SELLER),
        allow_admin: bool = True,
    ) -> UserDTO | None:
        """Return the requesting user if they hold one of ``roles`` (or are an admin).

        Raises:
            NotAuthorizedError: Otherwise.
        """
        user = await self._requester(session, requester_ref)
        if user is not None:
            if PartyRole.BUYER in roles and deal.buyer_id == user.id:
                return user
            if PartyRole.SELLER in roles and deal.seller_id == user.id:
                return user
        if allow_admin and self.is_admin(requester_ref):
            return user
        raise NotAuthorizedError(deal_id=deal.id, requester_ref=requester_ref)
