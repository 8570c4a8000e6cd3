# mlm_system/services/ledger_service.py
"""
Commission ledger writer - persists calculator results.

Line items are append-only and unique per (event, type, beneficiary):
    same key, same amount      -> existing row reused (re-run after a crash)
    same key, different amount -> line_item_conflict in the review queue
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional
import logging

from sqlalchemy.orm import Session

from models.commission import CommissionLineItem, UnresolvedCommission
from mlm_system.services.commission_service import (
    CommissionResult,
    ComputedLineItem,
    UnresolvedItem,
)

logger = logging.getLogger(__name__)


@dataclass
class LedgerWrite:
    lineItems: List[CommissionLineItem] = field(default_factory=list)  # created + reused
    created: int = 0
    reused: int = 0
    unresolved: List[UnresolvedCommission] = field(default_factory=list)


class CommissionLedgerService:
    """Writes line items and review-queue rows inside the caller's transaction."""

    def __init__(self, session: Session):
        self.session = session

    def _findExisting(self, item: ComputedLineItem) -> Optional[CommissionLineItem]:
        return self.session.query(CommissionLineItem).filter_by(
            sourceEventKey=item.sourceEventKey,
            commissionType=item.commissionType,
            beneficiaryID=item.beneficiaryId
        ).first()

    def queueUnresolved(
            self,
            sourceEventKey: str,
            reason: str,
            details: str,
            commissionType: Optional[str] = None,
            beneficiaryId: Optional[int] = None,
            generation: Optional[int] = None
    ) -> UnresolvedCommission:
        row = UnresolvedCommission(
            sourceEventKey=sourceEventKey,
            commissionType=commissionType,
            beneficiaryID=beneficiaryId,
            generation=generation,
            reason=reason,
            details=details[:1000],
            status="open",
        )
        self.session.add(row)
        return row

    async def recordResult(self, result: CommissionResult) -> LedgerWrite:
        """
        Persist a calculator result. Flushes, never commits.

        Returns:
            LedgerWrite with the line items to schedule and the queued rows
        """
        write = LedgerWrite()

        for item in result.lineItems:
            existing = self._findExisting(item)

            if existing is None:
                row = CommissionLineItem(
                    sourceEventKey=item.sourceEventKey,
                    beneficiaryID=item.beneficiaryId,
                    beneficiaryRank=item.beneficiaryRank,
                    generation=item.generation,
                    commissionType=item.commissionType,
                    amount=item.amount,
                    rate=item.rate,
                    ruleVersion=item.ruleVersion,
                    ruleGeneration=item.ruleGeneration,
                    referenceDate=item.referenceDate,
                    computedAt=item.computedAt,
                    notes=item.notes,
                )
                self.session.add(row)
                write.lineItems.append(row)
                write.created += 1
                continue

            if Decimal(str(existing.amount)) == item.amount:
                logger.info(f"Line item {item.key} already recorded, reusing {existing.lineItemID}")
                write.lineItems.append(existing)
                write.reused += 1
                continue

            logger.warning(
                f"Line item {item.key} recorded as {existing.amount}, recomputed as {item.amount}"
            )
            write.unresolved.append(self.queueUnresolved(
                item.sourceEventKey,
                UnresolvedCommission.REASON_LINE_ITEM_CONFLICT,
                f"Line item {existing.lineItemID} recorded as {existing.amount}, "
                f"recomputed as {item.amount} (rules {item.ruleVersion})",
                item.commissionType,
                item.beneficiaryId,
                item.generation,
            ))

        for miss in result.unresolved:
            write.unresolved.append(self._queueMiss(miss))

        self.session.flush()
        return write

    def _queueMiss(self, miss: UnresolvedItem) -> UnresolvedCommission:
        return self.queueUnresolved(
            miss.sourceEventKey,
            miss.reason,
            miss.details,
            miss.commissionType,
            miss.beneficiaryId,
            miss.generation,
        )
