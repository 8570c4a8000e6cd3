# mlm_system/services/payment_scheduler.py
"""
Payment scheduling - persisted line items -> dated payment obligations.

PaymentScheduler is pure: it takes line items plus the obligations already
scheduled for them and decides what to create. PaymentScheduleService does
the database side (load existing, insert created, queue conflicts).

One obligation per line item. An existing obligation that disagrees with the
recomputed amount or due date is a conflict: it goes to the review queue and
is never overwritten.
"""
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
import logging

from sqlalchemy.orm import Session

from models.commission import CommissionLineItem, UnresolvedCommission
from models.payment import PaymentObligation
from mlm_system.config.ranks import MONEY_QUANTUM
from mlm_system.errors import SchedulingConflictError
from mlm_system.utils.calendar_rules import PaymentCalendar

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObligationPlan:
    lineItemId: int
    beneficiaryId: int
    commissionType: str
    amount: Decimal
    dueDate: date


@dataclass(frozen=True)
class SchedulingConflict:
    existing: ObligationPlan
    computed: ObligationPlan

    @property
    def lineItemId(self) -> int:
        return self.computed.lineItemId

    def toError(self) -> SchedulingConflictError:
        return SchedulingConflictError(
            self.lineItemId,
            f"{self.existing.amount} due {self.existing.dueDate}",
            f"{self.computed.amount} due {self.computed.dueDate}",
        )


@dataclass(frozen=True)
class ScheduleResult:
    created: Tuple[ObligationPlan, ...] = ()
    existing: Tuple[ObligationPlan, ...] = ()
    conflicts: Tuple[SchedulingConflict, ...] = ()


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(MONEY_QUANTUM)


def plan_from_obligation(obligation: PaymentObligation) -> ObligationPlan:
    return ObligationPlan(
        lineItemId=obligation.lineItemID,
        beneficiaryId=obligation.beneficiaryID,
        commissionType=obligation.commissionType,
        amount=_money(obligation.amount),
        dueDate=obligation.dueDate,
    )


class PaymentScheduler:
    """Maps line items to obligations through the payment calendar."""

    def __init__(self, calendar: Optional[PaymentCalendar] = None):
        self.calendar = calendar or PaymentCalendar()

    def planFor(self, lineItem: CommissionLineItem) -> ObligationPlan:
        """Obligation a line item should have; dueDate depends only on type and referenceDate."""
        return ObligationPlan(
            lineItemId=lineItem.lineItemID,
            beneficiaryId=lineItem.beneficiaryID,
            commissionType=lineItem.commissionType,
            amount=_money(lineItem.amount),
            dueDate=self.calendar.dueDate(lineItem.commissionType, lineItem.referenceDate),
        )

    def schedule(
            self,
            lineItems: Iterable[CommissionLineItem],
            existing: Optional[Mapping[int, ObligationPlan]] = None
    ) -> ScheduleResult:
        """
        Decide obligations for line items.

        Args:
            lineItems: Persisted line items (lineItemID set)
            existing: Obligations already scheduled, keyed by lineItemId

        Returns:
            ScheduleResult; rescheduling its created plans yields only 'existing'
        """
        existing = dict(existing or {})
        created: List[ObligationPlan] = []
        unchanged: List[ObligationPlan] = []
        conflicts: List[SchedulingConflict] = []
        seen = set()

        for lineItem in lineItems:
            if lineItem.lineItemID in seen:
                continue
            seen.add(lineItem.lineItemID)

            plan = self.planFor(lineItem)
            current = existing.get(plan.lineItemId)

            if current is None:
                created.append(plan)
                existing[plan.lineItemId] = plan
            elif current.amount == plan.amount and current.dueDate == plan.dueDate:
                unchanged.append(current)
            else:
                conflict = SchedulingConflict(existing=current, computed=plan)
                logger.warning(str(conflict.toError()))
                conflicts.append(conflict)

        return ScheduleResult(tuple(created), tuple(unchanged), tuple(conflicts))


class PaymentScheduleService:
    """Persists scheduling decisions inside the caller's transaction."""

    def __init__(self, session: Session, scheduler: Optional[PaymentScheduler] = None):
        self.session = session
        self.scheduler = scheduler or PaymentScheduler(PaymentCalendar.fromConfig())

    def _loadExisting(self, lineItemIds: List[int]) -> Dict[int, ObligationPlan]:
        if not lineItemIds:
            return {}
        obligations = self.session.query(PaymentObligation).filter(
            PaymentObligation.lineItemID.in_(lineItemIds)
        ).all()
        return {o.lineItemID: plan_from_obligation(o) for o in obligations}

    async def scheduleLineItems(self, lineItems: List[CommissionLineItem]) -> ScheduleResult:
        """
        Schedule obligations for persisted line items.
        Flushes, never commits: the caller owns the transaction.
        """
        existing = self._loadExisting([item.lineItemID for item in lineItems])
        result = self.scheduler.schedule(lineItems, existing)

        for plan in result.created:
            self.session.add(PaymentObligation(
                lineItemID=plan.lineItemId,
                beneficiaryID=plan.beneficiaryId,
                commissionType=plan.commissionType,
                amount=plan.amount,
                dueDate=plan.dueDate,
                status=PaymentObligation.STATUS_SCHEDULED,
            ))

        sourceKeys = {item.lineItemID: item.sourceEventKey for item in lineItems}
        for conflict in result.conflicts:
            self.session.add(UnresolvedCommission(
                sourceEventKey=sourceKeys[conflict.lineItemId],
                commissionType=conflict.computed.commissionType,
                beneficiaryID=conflict.computed.beneficiaryId,
                reason=UnresolvedCommission.REASON_SCHEDULING_CONFLICT,
                details=str(conflict.toError()),
            ))

        self.session.flush()

        if result.created:
            logger.info(
                f"Scheduled {len(result.created)} obligations "
                f"({len(result.existing)} existing, {len(result.conflicts)} conflicts)"
            )
        return result
