from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session, selectinload

from crm_admin.crm.models import (
    CLOSED_STAGES,
    Activity,
    ActivityStatus,
    ActivityType,
    Customer,
    CustomerStatus,
    Deal,
    DealStage,
)
from crm_admin.crm.schemas import (
    ActivityStats,
    CustomerStats,
    DealRead,
    DealStats,
    ReportOverviewRead,
    TopCustomerRead,
)


def _as_float(value: Decimal | float | int | None) -> float:
    if value is None:
        return 0.0
    return round(float(value), 2)


class ReportService:
    """Read-only cross-entity aggregates over live (non-deleted) rows."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("crm_admin.crm.reports")

    def overview(self, session: Session, *, top_n: int = 5, recent_n: int = 5) -> ReportOverviewRead:
        return ReportOverviewRead(
            customers=self.customer_stats(session),
            deals=self.deal_stats(session),
            activities=self.activity_stats(session),
            recent_deals=self.recent_deals(session, recent_n),
            top_customers=self.top_customers(session, top_n),
        )

    def customer_stats(self, session: Session) -> CustomerStats:
        rows = session.execute(
            select(Customer.status, func.count(Customer.id))
            .where(Customer.deleted_at.is_(None))
            .group_by(Customer.status)
        ).all()
        by_status = dict.fromkeys((status.value for status in CustomerStatus), 0)
        by_status.update({status: int(count) for status, count in rows})
        return CustomerStats(total=sum(by_status.values()), by_status=by_status)

    def deal_stats(self, session: Session) -> DealStats:
        rows = session.execute(
            select(Deal.stage, func.count(Deal.id), func.coalesce(func.sum(Deal.amount), 0))
            .where(Deal.deleted_at.is_(None))
            .group_by(Deal.stage)
        ).all()

        by_stage = dict.fromkeys((stage.value for stage in DealStage), 0)
        total = 0
        total_value = Decimal("0")
        won_value = Decimal("0")
        won_count = lost_count = open_count = 0
        for stage, count, value in rows:
            count = int(count)
            value = Decimal(str(value))
            by_stage[stage] = count
            total += count
            total_value += value
            if stage == DealStage.CLOSED_WON:
                won_count += count
                won_value += value
            elif stage == DealStage.CLOSED_LOST:
                lost_count += count
            elif stage not in CLOSED_STAGES:
                open_count += count

        average = total_value / total if total else Decimal("0")
        return DealStats(
            total=total,
            total_value=_as_float(total_value),
            won_value=_as_float(won_value),
            won_count=won_count,
            lost_count=lost_count,
            open_count=open_count,
            average_deal_size=_as_float(average),
            by_stage=by_stage,
        )

    def activity_stats(self, session: Session) -> ActivityStats:
        live = Activity.deleted_at.is_(None)
        status_counts = {
            status: int(count)
            for status, count in session.execute(
                select(Activity.status, func.count(Activity.id)).where(live).group_by(Activity.status)
            ).all()
        }
        by_type = dict.fromkeys((activity_type.value for activity_type in ActivityType), 0)
        type_rows = session.execute(
            select(Activity.type, func.count(Activity.id)).where(live).group_by(Activity.type)
        ).all()
        by_type.update({activity_type: int(count) for activity_type, count in type_rows})
        return ActivityStats(
            total=sum(status_counts.values()),
            scheduled=status_counts.get(ActivityStatus.SCHEDULED, 0),
            completed=status_counts.get(ActivityStatus.COMPLETED, 0),
            cancelled=status_counts.get(ActivityStatus.CANCELLED, 0),
            overdue=status_counts.get(ActivityStatus.OVERDUE, 0),
            by_type=by_type,
        )

    def recent_deals(self, session: Session, limit: int = 5) -> list[DealRead]:
        stmt = (
            select(Deal)
            .where(Deal.deleted_at.is_(None))
            .options(selectinload(Deal.customer))
            .order_by(Deal.created_at.desc(), Deal.id.desc())
            .limit(limit)
        )
        return [DealRead.model_validate(deal) for deal in session.scalars(stmt).all()]

    def top_customers(self, session: Session, limit: int = 5) -> list[TopCustomerRead]:
        deals_value = func.coalesce(func.sum(Deal.amount), 0)
        stmt = (
            select(
                Customer.id,
                Customer.name,
                Customer.email,
                Customer.company,
                func.count(Deal.id).label("deals_count"),
                deals_value.label("deals_value"),
            )
            .select_from(Customer)
            .outerjoin(Deal, and_(Deal.customer_id == Customer.id, Deal.deleted_at.is_(None)))
            .where(Customer.deleted_at.is_(None))
            .group_by(Customer.id, Customer.name, Customer.email, Customer.company)
            .order_by(deals_value.desc(), Customer.id.asc())
            .limit(limit)
        )
        return [
            TopCustomerRead(
                id=row.id,
                name=row.name,
                email=row.email,
                company=row.company,
                deals_count=int(row.deals_count),
                deals_value=_as_float(row.deals_value),
            )
            for row in session.execute(stmt).all()
        ]
