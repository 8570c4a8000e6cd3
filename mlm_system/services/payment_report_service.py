# mlm_system/services/payment_report_service.py
"""
Payment reporting and operator actions on the schedule.

Overdue is derived (scheduled and due before the reference date), never
stored. The engine does not mark obligations paid, payroll does.
"""
from collections import defaultdict
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from models.commission import UnresolvedCommission
from models.payment import PaymentObligation
from mlm_system.config.ranks import CommissionType
from mlm_system.utils.calendar_rules import month_end
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


def _obligation_dict(obligation: PaymentObligation) -> Dict:
    return {
        "obligationId": obligation.obligationID,
        "lineItemId": obligation.lineItemID,
        "beneficiaryId": obligation.beneficiaryID,
        "commissionType": obligation.commissionType,
        "amount": Decimal(str(obligation.amount)),
        "dueDate": obligation.dueDate,
        "status": obligation.status,
    }


def _totals_by_type(rows: List[Dict]) -> Dict[str, Decimal]:
    totals = {commissionType.value: Decimal("0") for commissionType in CommissionType}
    for row in rows:
        totals[row["commissionType"]] = totals.get(row["commissionType"], Decimal("0")) + row["amount"]
    return totals


class PaymentReportService:
    """Read-side queries over payment obligations and the review queue."""

    def __init__(self, session: Session):
        self.session = session

    def _scheduled(self):
        return self.session.query(PaymentObligation).filter(
            PaymentObligation.status == PaymentObligation.STATUS_SCHEDULED
        )

    async def getUpcomingPayments(
            self,
            beneficiaryId: Optional[int] = None,
            days: int = 30,
            asOf: Optional[date] = None
    ) -> Dict:
        """
        Scheduled obligations due within the next `days` days.

        Returns:
            Dict with payments sorted by due date and totals per commission type
        """
        asOf = asOf or timeMachine.today
        query = self._scheduled().filter(
            PaymentObligation.dueDate >= asOf,
            PaymentObligation.dueDate <= asOf + timedelta(days=days)
        )
        if beneficiaryId is not None:
            query = query.filter(PaymentObligation.beneficiaryID == beneficiaryId)

        payments = [
            _obligation_dict(o) for o in
            query.order_by(PaymentObligation.dueDate, PaymentObligation.obligationID).all()
        ]

        return {
            "asOf": asOf,
            "payments": payments,
            "totals": _totals_by_type(payments),
            "nextDueDate": payments[0]["dueDate"] if payments else None,
        }

    async def getOverduePayments(self, asOf: Optional[date] = None) -> List[Dict]:
        """Scheduled obligations whose due date has passed, with days late."""
        asOf = asOf or timeMachine.today
        overdue = self._scheduled().filter(
            PaymentObligation.dueDate < asOf
        ).order_by(PaymentObligation.dueDate, PaymentObligation.obligationID).all()

        result = []
        for obligation in overdue:
            row = _obligation_dict(obligation)
            row["daysOverdue"] = (asOf - obligation.dueDate).days
            result.append(row)

        if result:
            logger.warning(f"{len(result)} obligations overdue as of {asOf}")
        return result

    async def getMonthlyPaymentReport(self, year: int, month: int) -> Dict:
        """All scheduled obligations falling due in a calendar month, by type."""
        firstDay = date(year, month, 1)
        lastDay = month_end(firstDay)

        obligations = self._scheduled().filter(
            PaymentObligation.dueDate >= firstDay,
            PaymentObligation.dueDate <= lastDay
        ).order_by(PaymentObligation.dueDate, PaymentObligation.obligationID).all()

        byType: Dict[str, List[Dict]] = defaultdict(list)
        for obligation in obligations:
            byType[obligation.commissionType].append(_obligation_dict(obligation))

        allRows = [row for rows in byType.values() for row in rows]

        return {
            "month": f"{year:04d}-{month:02d}",
            "payments": {commissionType.value: byType.get(commissionType.value, [])
                         for commissionType in CommissionType},
            "totals": _totals_by_type(allRows),
            "paymentDates": sorted({row["dueDate"] for row in allRows}),
            "count": len(allRows),
        }

    async def getPayrollSummary(self, dueDate: date) -> List[Dict]:
        """
        Amounts payroll has to pay on a due date, aggregated per beneficiary.

        Returns:
            List of {beneficiaryId, total, byType, obligationIds} sorted by beneficiary
        """
        obligations = self._scheduled().filter(
            PaymentObligation.dueDate == dueDate
        ).order_by(PaymentObligation.beneficiaryID, PaymentObligation.obligationID).all()

        summary: Dict[int, Dict] = {}
        for obligation in obligations:
            entry = summary.setdefault(obligation.beneficiaryID, {
                "beneficiaryId": obligation.beneficiaryID,
                "total": Decimal("0"),
                "byType": defaultdict(Decimal),
                "obligationIds": [],
            })
            amount = Decimal(str(obligation.amount))
            entry["total"] += amount
            entry["byType"][obligation.commissionType] += amount
            entry["obligationIds"].append(obligation.obligationID)

        for entry in summary.values():
            entry["byType"] = dict(entry["byType"])

        return [summary[key] for key in sorted(summary)]

    # ═══════════════════════════════════════════════════════════════════════
    # OPERATOR ACTIONS
    # ═══════════════════════════════════════════════════════════════════════

    async def cancelObligation(self, obligationId: int, reason: str) -> bool:
        """
        Cancel a scheduled obligation (operator decision).

        Returns:
            True if cancelled, False if missing or not scheduled
        """
        obligation = self.session.query(PaymentObligation).filter_by(
            obligationID=obligationId
        ).first()

        if not obligation:
            logger.error(f"Obligation {obligationId} not found")
            return False

        if obligation.status != PaymentObligation.STATUS_SCHEDULED:
            logger.warning(f"Obligation {obligationId} is {obligation.status}, cannot cancel")
            return False

        obligation.status = PaymentObligation.STATUS_CANCELLED
        obligation.notes = reason
        self.session.commit()

        logger.info(f"Obligation {obligationId} cancelled: {reason}")
        return True

    async def listOpenUnresolved(self, limit: int = 100) -> List[UnresolvedCommission]:
        return self.session.query(UnresolvedCommission).filter(
            UnresolvedCommission.status == "open"
        ).order_by(UnresolvedCommission.unresolvedID).limit(limit).all()

    async def resolveUnresolved(self, unresolvedId: int, notes: str) -> bool:
        """Close a review-queue entry once an operator has handled it."""
        item = self.session.query(UnresolvedCommission).filter_by(
            unresolvedID=unresolvedId
        ).first()

        if not item:
            logger.error(f"Unresolved commission {unresolvedId} not found")
            return False

        item.status = "resolved"
        item.resolutionNotes = notes
        self.session.commit()

        logger.info(f"Unresolved commission {unresolvedId} resolved")
        return True
