"""
Payout method registry.

Each user holds a small set of destinations, at most one of them the
default. Destinations are immutable: there is no update beyond toggling the
default, and removal is a soft delete so settled payouts keep their
reference.
"""

from typing import List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.errors import PayoutMethodError, PayoutNotFoundError
from ..core.logging import get_logger
from ..core.security import sanitize_log_data
from ..models.payout_method import PayoutMethod
from ..models.payout_request import OPEN_STATUSES, PayoutRequest
from ..utils.clock import utcnow

logger = get_logger(__name__)


class PayoutMethodService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_methods(self, user_id: UUID) -> List[PayoutMethod]:
        """Active methods, default first, then newest first."""
        stmt = (
            select(PayoutMethod)
            .where(PayoutMethod.user_id == user_id, PayoutMethod.deleted_at.is_(None))
            .order_by(PayoutMethod.is_default.desc(), PayoutMethod.created_at.desc())
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_method(self, user_id: UUID, method_id: UUID) -> PayoutMethod:
        stmt = (
            select(PayoutMethod)
            .where(
                PayoutMethod.id == method_id,
                PayoutMethod.user_id == user_id,
                PayoutMethod.deleted_at.is_(None),
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        method = result.scalar_one_or_none()
        if method is None:
            raise PayoutNotFoundError(
                "Payout method not found",
                {"resource": "payout_method", "payout_method_id": str(method_id)},
            )
        return method

    async def add_method(self, user_id: UUID, data, correlation_id: Optional[str] = None) -> PayoutMethod:
        """
        Register a destination for ``user_id``. ``data`` is one of the
        ``PayoutMethodCreate`` variants. The first method becomes the default.

        Raises:
            PayoutMethodError: the user already holds the maximum number of methods
        """
        active_count = await self.db.scalar(
            select(func.count()).select_from(PayoutMethod).where(
                PayoutMethod.user_id == user_id, PayoutMethod.deleted_at.is_(None)
            )
        )
        if active_count >= settings.max_payout_methods_per_user:
            raise PayoutMethodError(
                f"Maximum of {settings.max_payout_methods_per_user} payout methods allowed",
                {"limit": settings.max_payout_methods_per_user},
            )

        fields = data.to_model_fields()
        make_default = bool(fields.pop("is_default", False)) or active_count == 0

        try:
            if make_default:
                await self._clear_default(user_id)
            method = PayoutMethod(user_id=user_id, is_default=make_default, **fields)
            self.db.add(method)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        await self.db.refresh(method)

        logger.info("Payout method added", extra={
            "correlation_id": correlation_id,
            "user_id": str(user_id),
            "payout_method_id": str(method.id),
            "method": sanitize_log_data(fields),
            "is_default": make_default,
        })
        return method

    async def set_default(self, user_id: UUID, method_id: UUID) -> PayoutMethod:
        method = await self.get_method(user_id, method_id)
        if method.is_default:
            return method
        try:
            await self._clear_default(user_id)
            method.is_default = True
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        await self.db.refresh(method)
        logger.info("Default payout method changed", extra={
            "user_id": str(user_id),
            "payout_method_id": str(method.id),
        })
        return method

    async def remove_method(self, user_id: UUID, method_id: UUID, correlation_id: Optional[str] = None) -> None:
        """
        Soft-delete a method. Refused while pending or processing payouts use
        it. Removing the default promotes the newest remaining method.
        """
        method = await self.get_method(user_id, method_id)

        open_payouts = await self.db.scalar(
            select(func.count()).select_from(PayoutRequest).where(
                PayoutRequest.payout_method_id == method.id,
                PayoutRequest.status.in_(list(OPEN_STATUSES)),
            )
        )
        if open_payouts:
            raise PayoutMethodError(
                "Cannot remove a method with pending payouts",
                {"payout_method_id": str(method.id), "open_payouts": open_payouts},
            )

        was_default = method.is_default
        try:
            method.deleted_at = utcnow()
            method.is_default = False
            await self.db.flush()

            promoted = None
            if was_default:
                stmt = (
                    select(PayoutMethod)
                    .where(PayoutMethod.user_id == user_id, PayoutMethod.deleted_at.is_(None))
                    .order_by(PayoutMethod.created_at.desc())
                    .limit(1)
                )
                promoted = (await self.db.execute(stmt)).scalar_one_or_none()
                if promoted is not None:
                    promoted.is_default = True
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Payout method removed", extra={
            "correlation_id": correlation_id,
            "user_id": str(user_id),
            "payout_method_id": str(method.id),
            "promoted_default": str(promoted.id) if promoted is not None else None,
        })

    async def _clear_default(self, user_id: UUID) -> None:
        await self.db.execute(
            update(PayoutMethod)
            .where(
                PayoutMethod.user_id == user_id,
                PayoutMethod.is_default.is_(True),
                PayoutMethod.deleted_at.is_(None),
            )
            .values(is_default=False)
        )
        await self.db.flush()
