"""Read-only catalog lookups for plans, pricings and features."""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.db.models.plan import Plan, PlanFeature, PlanPricing


class PlanRepo:
    """Data-access helpers for :class:`Plan` and its children."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, plan_id: str) -> Plan | None:
        result = await self.session.execute(select(Plan).where(Plan.id == plan_id))
        return result.scalar_one_or_none()

    async def get_pricing(self, pricing_id: int) -> PlanPricing | None:
        result = await self.session.execute(
            select(PlanPricing).where(PlanPricing.id == pricing_id)
        )
        return result.scalar_one_or_none()

    async def get_feature(self, plan_id: str, key: str) -> PlanFeature | None:
        result = await self.session.execute(
            select(PlanFeature).where(
                PlanFeature.plan_id == plan_id,
                PlanFeature.key == key,
            )
        )
        return result.scalar_one_or_none()

    async def list_features(self, plan_id: str) -> list[PlanFeature]:
        result = await self.session.execute(
            select(PlanFeature)
            .where(PlanFeature.plan_id == plan_id)
            .order_by(PlanFeature.key)
        )
        return list(result.scalars().all())
