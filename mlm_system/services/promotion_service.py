# mlm_system/services/promotion_service.py
"""
Promotion history writer - applies processed position change events.

The history row carries the event key in notes, so re-processing the same
event reuses its row. A row the CRM already mirrored for the same
(distributor, rank, date) is reused as well.
"""
from typing import Optional, Tuple
import logging

from sqlalchemy.orm import Session

from models.distributor import Distributor, RankPromotion
from mlm_system.events.qualifying import PositionChangeEvent

logger = logging.getLogger(__name__)


class PromotionHistoryService:
    """Appends rank promotions inside the caller's transaction."""

    def __init__(self, session: Session):
        self.session = session

    def _findExisting(self, event: PositionChangeEvent) -> Optional[RankPromotion]:
        byKey = self.session.query(RankPromotion).filter_by(notes=event.eventKey).first()
        if byKey:
            return byKey

        return self.session.query(RankPromotion).filter_by(
            distributorID=event.distributorId,
            newRank=event.newRank.value,
            effectiveDate=event.effectiveDate
        ).first()

    def _previousRank(self, event: PositionChangeEvent) -> Optional[str]:
        previous = self.session.query(RankPromotion).filter(
            RankPromotion.distributorID == event.distributorId,
            RankPromotion.effectiveDate < event.effectiveDate
        ).order_by(
            RankPromotion.effectiveDate.desc(), RankPromotion.promotionID.desc()
        ).first()
        return previous.newRank if previous else None

    async def recordPromotion(self, event: PositionChangeEvent) -> Tuple[Optional[RankPromotion], bool]:
        """
        Append the promotion to the history. Flushes, never commits.

        Returns:
            (row, created); row is None when the distributor is unknown
        """
        existing = self._findExisting(event)
        if existing:
            logger.info(f"Promotion {event.eventKey} already in history ({existing.promotionID})")
            return existing, False

        distributor = self.session.query(Distributor.distributorID).filter_by(
            distributorID=event.distributorId
        ).first()
        if not distributor:
            logger.error(f"Distributor {event.distributorId} not found for promotion {event.eventKey}")
            return None, False

        promotion = RankPromotion(
            distributorID=event.distributorId,
            previousRank=self._previousRank(event),
            newRank=event.newRank.value,
            effectiveDate=event.effectiveDate,
            notes=event.eventKey,
        )
        self.session.add(promotion)
        self.session.flush()

        logger.info(
            f"Distributor {event.distributorId} promotion recorded: "
            f"{promotion.previousRank or '-'} → {promotion.newRank} on {event.effectiveDate}"
        )
        return promotion, True
