# background/commission_runner.py
"""
Commission automation runner - fetch -> compute -> schedule -> persist.

One run:
    1. Release stale claims left by crashed runs
    2. Claim a bounded batch of pending events (optimistic UPDATE ... WHERE status='pending')
    3. Snapshot network and rule tables once
    4. Group events by partition (root distributor) and take one event per
       partition in turn, so a deep tree cannot use up the whole run
    5. Commit each event atomically: line items, review rows, obligations,
       promotion history, processed flag

Exclusion between runs (in this process or another one) comes from the
claim token: an event belongs to exactly one run, and a run works through
its partitions serially. Promotions processed in a run feed the snapshot
of the next run, never the current one.

IntegrityError aborts the affected partition only: its claims go back to
pending with an attempt counted; after RUNNER_MAX_ATTEMPTS the event is
marked failed and queued for review. Re-running is always safe.
"""
import asyncio
import logging
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session

from config import Config
from models.commission import UnresolvedCommission
from models.qualifying_event import QualifyingEventRecord
from mlm_system.config.rule_tables import RuleTableProvider, load_rule_tables
from mlm_system.errors import IntegrityError
from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.events.qualifying import PositionChangeEvent, event_from_record
from mlm_system.network.snapshot import NetworkSnapshot
from mlm_system.services.commission_service import CommissionCalculator
from mlm_system.services.ledger_service import CommissionLedgerService
from mlm_system.services.payment_scheduler import PaymentScheduler, PaymentScheduleService
from mlm_system.services.promotion_service import PromotionHistoryService
from mlm_system.utils.calendar_rules import PaymentCalendar
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class RunnerState(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    COMPUTING = "computing"
    SCHEDULING = "scheduling"
    FAILED = "failed"


@dataclass
class RunSummary:
    eventsProcessed: int = 0
    lineItemsCreated: int = 0
    obligationsCreated: int = 0
    unresolved: int = 0
    duplicatesSkipped: int = 0
    promotionsRecorded: int = 0
    failedPartitions: List[str] = field(default_factory=list)
    released: int = 0
    timedOut: bool = False
    cancelled: bool = False

    def toDict(self) -> dict:
        return asdict(self)


class CommissionRunner:
    """
    Idempotent, resumable commission batch job.
    Invoked by MLMScheduler on an interval and on every server start.
    """

    def __init__(
            self,
            session_factory: Optional[Callable[[], Session]] = None,
            calculator: Optional[CommissionCalculator] = None,
            scheduler: Optional[PaymentScheduler] = None,
            rulesLoader: Optional[Callable[[], RuleTableProvider]] = None,
            batchSize: Optional[int] = None,
            maxDurationSeconds: Optional[float] = None,
            maxAttempts: Optional[int] = None
    ):
        if session_factory is None:
            from core.db import get_session_factory
            session_factory = get_session_factory()

        self.session_factory = session_factory
        self.calculator = calculator or CommissionCalculator()
        self.scheduler = scheduler or PaymentScheduler(PaymentCalendar.fromConfig())
        self.rulesLoader = rulesLoader or load_rule_tables

        self.batchSize = batchSize or Config.get(Config.RUNNER_BATCH_SIZE, 100)
        self.maxDurationSeconds = maxDurationSeconds or Config.get(Config.RUNNER_MAX_DURATION_SECONDS, 60)
        self.maxAttempts = maxAttempts or Config.get(Config.RUNNER_MAX_ATTEMPTS, 5)

        self.state = RunnerState.IDLE
        self.lastSummary: Optional[RunSummary] = None

        # Keeps one instance from overlapping itself; other runs are kept
        # apart by claim tokens
        self._runLock = asyncio.Lock()
        self._cancelRequested = False

    def cancel(self):
        """Abort the current run before its next event commit."""
        self._cancelRequested = True
        logger.warning("Commission run cancellation requested")

    # ═══════════════════════════════════════════════════════════════════════
    # RUN
    # ═══════════════════════════════════════════════════════════════════════

    async def runOnce(self) -> RunSummary:
        """
        Process one bounded batch of pending qualifying events.

        Returns:
            RunSummary with counters for the batch
        """
        async with self._runLock:
            self._cancelRequested = False
            self.state = RunnerState.IDLE
            summary = RunSummary()
            runAt = timeMachine.now
            deadline = time.monotonic() + self.maxDurationSeconds
            claimToken = uuid.uuid4().hex

            session = self.session_factory()
            try:
                # ═══════════════════════════════════════════════════════════
                # FETCH
                # ═══════════════════════════════════════════════════════════
                self.state = RunnerState.FETCHING
                self._releaseStaleClaims(session, runAt)
                eventIds = self._claimBatch(session, claimToken, runAt)

                if not eventIds:
                    logger.debug("No pending qualifying events")
                    self.state = RunnerState.IDLE
                    self.lastSummary = summary
                    return summary

                logger.info(f"Claimed {len(eventIds)} qualifying events (token {claimToken[:8]})")

                network = NetworkSnapshot.fromSession(session)
                rules = self.rulesLoader()

                partitions = await self._partition(session, eventIds, network, summary)

                # ═══════════════════════════════════════════════════════════
                # COMPUTE + SCHEDULE, one event per partition in turn
                # ═══════════════════════════════════════════════════════════
                queues = dict(sorted(partitions.items()))
                while queues:
                    for partitionKey in list(queues):
                        if self._mustStop(deadline, summary):
                            for rest in queues.values():
                                summary.released += self._release(session, rest)
                            queues.clear()
                            break

                        pending = queues[partitionKey]
                        eventId = pending.pop(0)
                        healthy = await self._processPartitionEvent(
                            session, partitionKey, eventId, pending,
                            network, rules, runAt, summary
                        )
                        if not healthy or not pending:
                            del queues[partitionKey]

            finally:
                session.close()

            self.state = RunnerState.FAILED if summary.failedPartitions else RunnerState.IDLE

            logger.info(
                f"Commission run finished: processed={summary.eventsProcessed}, "
                f"lineItems={summary.lineItemsCreated}, obligations={summary.obligationsCreated}, "
                f"unresolved={summary.unresolved}, duplicates={summary.duplicatesSkipped}, "
                f"promotions={summary.promotionsRecorded}, "
                f"failedPartitions={len(summary.failedPartitions)}, released={summary.released}"
                f"{', timed out' if summary.timedOut else ''}"
                f"{', cancelled' if summary.cancelled else ''}"
            )

            self.lastSummary = summary
            await eventBus.emit(MLMEvents.RUNNER_COMPLETED, summary.toDict())
            return summary

    def _mustStop(self, deadline: float, summary: RunSummary) -> bool:
        if self._cancelRequested:
            summary.cancelled = True
            return True
        if time.monotonic() >= deadline:
            if not summary.timedOut:
                logger.warning(f"Commission run exceeded {self.maxDurationSeconds}s, releasing claims")
            summary.timedOut = True
            return True
        return False

    # ═══════════════════════════════════════════════════════════════════════
    # CLAIMS
    # ═══════════════════════════════════════════════════════════════════════

    def _claimBatch(self, session: Session, claimToken: str, runAt: datetime) -> List[int]:
        candidateIds = [
            row.eventID for row in session.query(QualifyingEventRecord.eventID).filter(
                QualifyingEventRecord.status == QualifyingEventRecord.STATUS_PENDING
            ).order_by(QualifyingEventRecord.eventID).limit(self.batchSize).all()
        ]
        if not candidateIds:
            return []

        # Rows another runner claimed in between are skipped by the status guard
        session.query(QualifyingEventRecord).filter(
            QualifyingEventRecord.eventID.in_(candidateIds),
            QualifyingEventRecord.status == QualifyingEventRecord.STATUS_PENDING
        ).update({
            QualifyingEventRecord.status: QualifyingEventRecord.STATUS_PROCESSING,
            QualifyingEventRecord.claimToken: claimToken,
            QualifyingEventRecord.claimedAt: runAt,
        }, synchronize_session=False)
        session.commit()

        return [
            row.eventID for row in session.query(QualifyingEventRecord.eventID).filter(
                QualifyingEventRecord.claimToken == claimToken
            ).order_by(QualifyingEventRecord.eventID).all()
        ]

    def _releaseStaleClaims(self, session: Session, runAt: datetime) -> int:
        """Claims older than twice the max run duration belong to a dead run."""
        staleBefore = runAt - timedelta(seconds=self.maxDurationSeconds * 2)
        released = session.query(QualifyingEventRecord).filter(
            QualifyingEventRecord.status == QualifyingEventRecord.STATUS_PROCESSING,
            QualifyingEventRecord.claimedAt < staleBefore
        ).update({
            QualifyingEventRecord.status: QualifyingEventRecord.STATUS_PENDING,
            QualifyingEventRecord.claimToken: None,
            QualifyingEventRecord.claimedAt: None,
        }, synchronize_session=False)
        session.commit()

        if released:
            logger.warning(f"Released {released} stale claims")
        return released

    def _release(self, session: Session, eventIds: List[int]) -> int:
        """Give unprocessed claims back without counting an attempt."""
        if not eventIds:
            return 0
        released = session.query(QualifyingEventRecord).filter(
            QualifyingEventRecord.eventID.in_(eventIds),
            QualifyingEventRecord.status == QualifyingEventRecord.STATUS_PROCESSING
        ).update({
            QualifyingEventRecord.status: QualifyingEventRecord.STATUS_PENDING,
            QualifyingEventRecord.claimToken: None,
            QualifyingEventRecord.claimedAt: None,
        }, synchronize_session=False)
        session.commit()
        return released

    def _failAttempt(
            self,
            session: Session,
            eventId: int,
            reason: str,
            error: str,
            summary: RunSummary
    ) -> None:
        """
        Count a failed attempt: back to pending, or failed + review row
        once RUNNER_MAX_ATTEMPTS is reached. Commits.
        """
        record = session.get(QualifyingEventRecord, eventId)
        if record is None or record.status != QualifyingEventRecord.STATUS_PROCESSING:
            return

        record.attempts = (record.attempts or 0) + 1
        record.lastError = error[:500]
        record.claimToken = None
        record.claimedAt = None

        if record.attempts >= self.maxAttempts:
            record.status = QualifyingEventRecord.STATUS_FAILED
            CommissionLedgerService(session).queueUnresolved(
                record.eventKey,
                reason,
                f"Gave up after {record.attempts} attempts: {error}",
            )
            summary.unresolved += 1
            logger.error(f"Event {record.eventKey} failed after {record.attempts} attempts: {error}")
        else:
            record.status = QualifyingEventRecord.STATUS_PENDING
            summary.released += 1
            logger.warning(
                f"Event {record.eventKey} released (attempt {record.attempts}/{self.maxAttempts}): {error}"
            )

        session.commit()

    # ═══════════════════════════════════════════════════════════════════════
    # PARTITIONING
    # ═══════════════════════════════════════════════════════════════════════

    async def _partition(
            self,
            session: Session,
            eventIds: List[int],
            network: NetworkSnapshot,
            summary: RunSummary
    ) -> Dict[str, List[int]]:
        """Group claimed events by root distributor; cycles get their own failing partition."""
        partitions: Dict[str, List[int]] = defaultdict(list)

        for eventId in eventIds:
            record = session.get(QualifyingEventRecord, eventId)
            sourceId = record.sourceDistributorID

            if sourceId not in network:
                self._failAttempt(
                    session, eventId, UnresolvedCommission.REASON_UNKNOWN_SOURCE,
                    f"Distributor {sourceId} not in network snapshot", summary
                )
                continue

            try:
                partitionKey = f"root:{network.getRoot(sourceId).distributorId}"
            except IntegrityError:
                partitionKey = f"cycle:{sourceId}"

            partitions[partitionKey].append(eventId)

        return partitions

    async def _processPartitionEvent(
            self,
            session: Session,
            partitionKey: str,
            eventId: int,
            remainingIds: List[int],
            network: NetworkSnapshot,
            rules: RuleTableProvider,
            runAt: datetime,
            summary: RunSummary
    ) -> bool:
        """
        Process the next event of a partition.

        Returns:
            False if the partition was aborted (its remaining claims are
            given back with an attempt counted)
        """
        try:
            await self._processEvent(session, eventId, network, rules, runAt, summary)

        except (IntegrityError, sa_exc.IntegrityError) as e:
            session.rollback()
            self.state = RunnerState.FAILED
            logger.error(f"Integrity failure in partition {partitionKey}: {e}", exc_info=True)

            summary.failedPartitions.append(partitionKey)
            for failedId in [eventId] + remainingIds:
                self._failAttempt(
                    session, failedId, UnresolvedCommission.REASON_INTEGRITY, str(e), summary
                )

            await eventBus.emit(MLMEvents.RUNNER_FAILED, {
                "partition": partitionKey,
                "error": str(e),
            })
            return False

        except Exception as e:
            session.rollback()
            logger.error(f"Error processing event {eventId}: {e}", exc_info=True)
            self._failAttempt(
                session, eventId, UnresolvedCommission.REASON_PROCESSING_ERROR, str(e), summary
            )

        return True

    async def _processEvent(
            self,
            session: Session,
            eventId: int,
            network: NetworkSnapshot,
            rules: RuleTableProvider,
            runAt: datetime,
            summary: RunSummary
    ):
        """Compute, persist and schedule one event in a single transaction."""
        record = session.get(QualifyingEventRecord, eventId)

        self.state = RunnerState.COMPUTING
        event = event_from_record(record)
        result = self.calculator.compute(event, network, rules, runAt)

        ledger = CommissionLedgerService(session)
        write = await ledger.recordResult(result)

        self.state = RunnerState.SCHEDULING
        scheduled = await PaymentScheduleService(session, self.scheduler).scheduleLineItems(write.lineItems)

        promotionCreated = False
        if isinstance(event, PositionChangeEvent):
            _, promotionCreated = await PromotionHistoryService(session).recordPromotion(event)

        record.status = QualifyingEventRecord.STATUS_PROCESSED
        record.processedAt = runAt
        record.claimToken = None
        record.lastError = None

        session.commit()

        unresolvedCount = len(write.unresolved) + len(scheduled.conflicts)
        summary.eventsProcessed += 1
        summary.lineItemsCreated += write.created
        summary.duplicatesSkipped += write.reused
        summary.obligationsCreated += len(scheduled.created)
        summary.unresolved += unresolvedCount
        if promotionCreated:
            summary.promotionsRecorded += 1

        logger.info(
            f"Processed {record.eventKey}: {write.created} line items "
            f"({result.totalAmount}), {len(scheduled.created)} obligations"
        )

        await eventBus.emit(MLMEvents.COMMISSION_COMPUTED, {
            "eventKey": record.eventKey,
            "lineItems": write.created,
            "totalAmount": str(result.totalAmount),
        })
        if scheduled.created:
            await eventBus.emit(MLMEvents.OBLIGATIONS_SCHEDULED, {
                "eventKey": record.eventKey,
                "obligations": len(scheduled.created),
            })
        if unresolvedCount:
            await eventBus.emit(MLMEvents.COMMISSION_UNRESOLVED, {
                "eventKey": record.eventKey,
                "count": unresolvedCount,
            })
