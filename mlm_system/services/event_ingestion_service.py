# mlm_system/services/event_ingestion_service.py
"""
Event ingestion - the only way qualifying events enter the inbox.
The natural event key makes ingestion idempotent.
"""
from datetime import datetime, date
from typing import Dict, Iterable, Optional, Union
import logging

from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session

from models.distributor import Distributor
from models.qualifying_event import QualifyingEventRecord
from mlm_system.config.ranks import CAE_TRIGGER_POINTS, CommissionType
from mlm_system.config.rule_tables import RuleTableProvider, load_rule_tables
from mlm_system.errors import DuplicateEventError
from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.events.qualifying import (
    QualifyingEvent,
    RecruitThresholdEvent,
    event_to_record_fields,
)
from mlm_system.utils.calendar_rules import as_business_date
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class EventIngestionService:
    """Writes qualifying events into the pending inbox."""

    def __init__(self, session: Session, rules: Optional[RuleTableProvider] = None):
        self.session = session
        self.rules = rules

    async def ingest(self, event: QualifyingEvent) -> QualifyingEventRecord:
        """
        Store a qualifying event as pending.

        Raises:
            DuplicateEventError: Event key already ingested
        """
        existing = self.session.query(QualifyingEventRecord.eventID).filter_by(
            eventKey=event.eventKey
        ).first()
        if existing:
            logger.warning(f"Event {event.eventKey} already ingested, skipping")
            raise DuplicateEventError(event.eventKey)

        record = QualifyingEventRecord(
            status=QualifyingEventRecord.STATUS_PENDING,
            attempts=0,
            **event_to_record_fields(event)
        )
        self.session.add(record)

        try:
            self.session.commit()
        except sa_exc.IntegrityError:
            # Concurrent ingestion of the same key
            self.session.rollback()
            logger.warning(f"Event {event.eventKey} ingested concurrently, skipping")
            raise DuplicateEventError(event.eventKey)

        logger.info(f"Ingested event {event.eventKey} (source {event.sourceDistributorId})")

        await eventBus.emit(MLMEvents.EVENT_INGESTED, {
            "eventKey": event.eventKey,
            "eventType": event.eventType.value,
            "sourceDistributorId": event.sourceDistributorId,
        })
        return record

    async def ingestMany(self, events: Iterable[QualifyingEvent]) -> Dict[str, int]:
        """Ingest a batch, skipping duplicates."""
        stats = {"ingested": 0, "duplicates": 0}

        for event in events:
            try:
                await self.ingest(event)
                stats["ingested"] += 1
            except DuplicateEventError:
                stats["duplicates"] += 1

        logger.info(f"Batch ingestion: {stats['ingested']} new, {stats['duplicates']} duplicates")
        return stats

    async def ingestPointsUpdate(
            self,
            distributorId: int,
            monthlyPoints: int,
            occurredAt: Union[datetime, date, str, None] = None
    ) -> Optional[QualifyingEventRecord]:
        """
        Turn a monthly points update into a CAE threshold event when a
        recruit reaches the trigger points in the month they joined.

        The trigger comes from the rule table version in force on the
        update date, the same one the calculator applies.

        Args:
            occurredAt: datetime, date or ISO string; defaults to now

        Returns:
            Ingested record, or None if no threshold was crossed
        """
        onDate = as_business_date(occurredAt) or timeMachine.today

        distributor = self.session.query(Distributor).filter_by(
            distributorID=distributorId
        ).first()

        if not distributor:
            logger.error(f"Distributor {distributorId} not found for points update")
            return None

        triggerPoints = self._caeTriggerPoints(onDate)
        if monthlyPoints < triggerPoints:
            logger.debug(
                f"Distributor {distributorId}: {monthlyPoints} points below CAE trigger {triggerPoints}"
            )
            return None

        joinDate: date = distributor.joinDate
        if (joinDate.year, joinDate.month) != (onDate.year, onDate.month):
            logger.debug(
                f"Distributor {distributorId} joined {joinDate}, "
                f"points update on {onDate} does not qualify for CAE"
            )
            return None

        event = RecruitThresholdEvent(
            recruitId=distributorId,
            monthKey=onDate.strftime('%Y-%m'),
            points=monthlyPoints,
        )

        try:
            return await self.ingest(event)
        except DuplicateEventError:
            return None

    def _caeTriggerPoints(self, onDate: date) -> int:
        """CAE trigger of the rule version in force on the date."""
        rules = self.rules if self.rules is not None else load_rule_tables()
        version = rules.versionFor(onDate)
        if version is None:
            # The calculator queues rule_not_found for such an event
            return CAE_TRIGGER_POINTS
        return version.eligibilityFor(CommissionType.CAE.value).triggerPoints
