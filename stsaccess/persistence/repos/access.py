from __future__ import annotations

from typing import Any

from sqlalchemy import and_, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stsaccess.domain.models import Purchase, StrategyAccess, User
from stsaccess.domain.state import ACCESS_PENDING


PURCHASE_COMPLETED = "COMPLETED"


async def get_access(session: AsyncSession, access_id: str) -> StrategyAccess | None:
    # Always bypass the identity map so workers act on the committed row.
    return await session.get(StrategyAccess, access_id, populate_existing=True)


async def transition_access(
    session: AsyncSession,
    access: StrategyAccess,
    values: dict[str, Any],
) -> bool:
    # Compare-and-swap on the row version; False means another writer got there first.
    result = await session.execute(
        update(StrategyAccess)
        .where(StrategyAccess.id == access.id, StrategyAccess.version == access.version)
        .values(version=StrategyAccess.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    await session.refresh(access)
    return True


async def override_access(
    session: AsyncSession,
    access: StrategyAccess,
    values: dict[str, Any],
) -> None:
    # Operator decisions win unconditionally but still advance the version in SQL.
    await session.execute(
        update(StrategyAccess)
        .where(StrategyAccess.id == access.id)
        .values(version=StrategyAccess.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    await session.refresh(access)


async def assign_job(
    session: AsyncSession,
    access: StrategyAccess,
    *,
    job_id: str,
    action: str,
) -> None:
    # A newly assigned job supersedes whatever job owned the row before.
    await session.execute(
        update(StrategyAccess)
        .where(StrategyAccess.id == access.id)
        .values(
            job_id=job_id,
            requested_action=action,
            last_backoff_s=None,
            version=StrategyAccess.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    await session.refresh(access)


async def count_pending(session: AsyncSession) -> int:
    result = await session.execute(
        select(func.count()).select_from(StrategyAccess).where(StrategyAccess.status == ACCESS_PENDING)
    )
    return int(result.scalar_one())


async def list_pending(session: AsyncSession, *, limit: int = 500) -> list[StrategyAccess]:
    result = await session.execute(
        select(StrategyAccess)
        .where(StrategyAccess.status == ACCESS_PENDING)
        .order_by(StrategyAccess.created_at, StrategyAccess.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_purchasers_with_access(
    session: AsyncSession,
    strategy_id: str,
) -> list[tuple[User, StrategyAccess | None]]:
    # Pair every eligible purchaser with their access row for this strategy, if any.
    has_completed_purchase = exists().where(
        and_(Purchase.user_id == User.id, Purchase.status == PURCHASE_COMPLETED)
    )
    stmt = (
        select(User, StrategyAccess)
        .outerjoin(
            StrategyAccess,
            and_(StrategyAccess.user_id == User.id, StrategyAccess.strategy_id == strategy_id),
        )
        .where(has_completed_purchase)
        .where(User.tradingview_username.is_not(None))
        .where(User.tradingview_username != "")
        .order_by(User.created_at, User.id)
    )
    result = await session.execute(stmt)
    return [(row[0], row[1]) for row in result.all()]
