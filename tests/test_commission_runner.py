# tests/test_commission_runner.py
"""
Tests for the commission automation runner.

Scenarios:
1. Sale end-to-end: line items, obligations, processed flag
2. Re-runs and re-ingestion change nothing
3. Sponsor cycle aborts its partition only, gives up after max attempts
4. Bounded batches, cancellation, timeout
5. CAE trigger from the rule version, promotions feeding CCA
6. Concurrent runners over one inbox

Run:
    pytest tests/test_commission_runner.py -v
"""
import asyncio
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal

import pytest

from background.commission_runner import CommissionRunner, RunnerState
from models import (
    CommissionLineItem,
    PaymentObligation,
    QualifyingEventRecord,
    RankPromotion,
    UnresolvedCommission,
)
from mlm_system.config.ranks import Rank
from mlm_system.config.rule_tables import RuleTableProvider, build_default_version
from mlm_system.errors import DuplicateEventError
from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.events.qualifying import PositionChangeEvent, RecruitThresholdEvent, SaleEvent
from mlm_system.services.event_ingestion_service import EventIngestionService


def default_rules():
    return RuleTableProvider([build_default_version()])


def cae_trigger_rules(trigger_points):
    default = build_default_version()
    cae = replace(default.eligibility["CAE"], triggerPoints=trigger_points)
    return RuleTableProvider([replace(default, eligibility={**default.eligibility, "CAE": cae})])


def ultra_sale(seller_id, sale_id="S-1"):
    return SaleEvent(
        saleId=sale_id,
        sellerId=seller_id,
        productType="Freebox Ultra",
        acquisitionDate=date(2027, 1, 10),
        installationDate=date(2027, 1, 20),
        baseAmount=Decimal("30"),
    )


def ingest(session, event):
    return asyncio.run(EventIngestionService(session).ingest(event))


def event_record(session, event_key):
    session.expire_all()
    return session.query(QualifyingEventRecord).filter_by(eventKey=event_key).one()


@pytest.fixture
def chain(add_distributor):
    """1 (Manager) <- 2 (ETL) <- 3 (ETT) <- 4 (Conseiller)"""
    add_distributor(1, rank="Manager")
    add_distributor(2, sponsor=1, rank="ETL")
    add_distributor(3, sponsor=2, rank="ETT")
    add_distributor(4, sponsor=3, rank="Conseiller")


@pytest.fixture
def make_runner(session_factory):
    def _make(**kwargs):
        kwargs.setdefault("rulesLoader", default_rules)
        return CommissionRunner(session_factory=session_factory, **kwargs)

    return _make


# =============================================================================
# TEST CLASS: End-to-end
# =============================================================================

class TestSaleEndToEnd:
    """Sale ingested -> runner -> ledger and payment schedule."""

    def test_sale_produces_line_items_and_obligations(self, session, chain, make_runner):
        """
        TEST: Freebox Ultra sale by 4, installed 2027-01-20.

        Expected: 4 CVD line items (50 / 3 / 1.50 / 0.90), 4 obligations due 2027-02-15
        """
        ingest(session, ultra_sale(4))

        summary = asyncio.run(make_runner().runOnce())

        assert summary.eventsProcessed == 1
        assert summary.lineItemsCreated == 4
        assert summary.obligationsCreated == 4
        assert summary.unresolved == 0
        assert summary.failedPartitions == []

        session.expire_all()
        items = session.query(CommissionLineItem).order_by(CommissionLineItem.generation).all()
        assert [(i.beneficiaryID, i.generation, Decimal(str(i.amount))) for i in items] == [
            (4, 0, Decimal("50")),
            (3, 1, Decimal("3")),
            (2, 2, Decimal("1.5")),
            (1, 3, Decimal("0.9")),
        ]
        assert all(i.sourceEventKey == "SALE:S-1" for i in items)

        obligations = session.query(PaymentObligation).all()
        assert len(obligations) == 4
        assert {o.dueDate for o in obligations} == {date(2027, 2, 15)}
        assert {o.lineItemID for o in obligations} == {i.lineItemID for i in items}

        record = event_record(session, "SALE:S-1")
        assert record.status == QualifyingEventRecord.STATUS_PROCESSED
        assert record.claimToken is None

    def test_runner_completed_emitted(self, session, chain, make_runner):
        received = []

        async def on_completed(data):
            received.append(data)

        eventBus.subscribe(MLMEvents.RUNNER_COMPLETED, on_completed)
        ingest(session, ultra_sale(4))

        asyncio.run(make_runner().runOnce())

        assert len(received) == 1
        assert received[0]["eventsProcessed"] == 1
        assert received[0]["lineItemsCreated"] == 4

    def test_empty_inbox(self, session, chain, make_runner):
        runner = make_runner()
        summary = asyncio.run(runner.runOnce())

        assert summary.eventsProcessed == 0
        assert runner.state == RunnerState.IDLE


# =============================================================================
# TEST CLASS: Idempotence
# =============================================================================

class TestIdempotence:
    """Running or ingesting twice never doubles the ledger."""

    def test_second_run_is_noop(self, session, chain, make_runner):
        ingest(session, ultra_sale(4))
        runner = make_runner()
        asyncio.run(runner.runOnce())

        summary = asyncio.run(runner.runOnce())

        assert summary.eventsProcessed == 0
        session.expire_all()
        assert session.query(CommissionLineItem).count() == 4
        assert session.query(PaymentObligation).count() == 4

    def test_reingest_is_rejected(self, session, chain, make_runner):
        ingest(session, ultra_sale(4))
        asyncio.run(make_runner().runOnce())

        with pytest.raises(DuplicateEventError):
            ingest(session, ultra_sale(4))

        session.expire_all()
        assert session.query(QualifyingEventRecord).count() == 1

    def test_reprocessing_reuses_line_items(self, session, chain, make_runner):
        """
        TEST: Event back to pending after a crash between commit and ack.
        """
        ingest(session, ultra_sale(4))
        asyncio.run(make_runner().runOnce())

        record = event_record(session, "SALE:S-1")
        record.status = QualifyingEventRecord.STATUS_PENDING
        session.commit()

        summary = asyncio.run(make_runner().runOnce())

        assert summary.eventsProcessed == 1
        assert summary.lineItemsCreated == 0
        assert summary.duplicatesSkipped == 4
        assert summary.obligationsCreated == 0

        session.expire_all()
        assert session.query(CommissionLineItem).count() == 4
        assert session.query(PaymentObligation).count() == 4


# =============================================================================
# TEST CLASS: Failures
# =============================================================================

class TestFailures:
    """Partition isolation and bounded retries."""

    @pytest.fixture
    def cycle(self, add_distributor):
        add_distributor(10, sponsor=11, rank="ETT")
        add_distributor(11, sponsor=10, rank="ETT")

    def test_cycle_fails_partition_only(self, session, chain, cycle, make_runner):
        """
        TEST: Sponsor cycle 10 <-> 11 aborts its partition, the healthy one is processed.
        """
        ingest(session, ultra_sale(10, sale_id="S-CYCLE"))
        ingest(session, ultra_sale(4))
        failures = []

        async def on_failed(data):
            failures.append(data)

        eventBus.subscribe(MLMEvents.RUNNER_FAILED, on_failed)
        runner = make_runner(maxAttempts=2)

        summary = asyncio.run(runner.runOnce())

        assert summary.failedPartitions == ["cycle:10"]
        assert summary.eventsProcessed == 1
        assert summary.released == 1
        assert runner.state == RunnerState.FAILED
        assert [f["partition"] for f in failures] == ["cycle:10"]

        record = event_record(session, "SALE:S-CYCLE")
        assert record.status == QualifyingEventRecord.STATUS_PENDING
        assert record.attempts == 1
        assert event_record(session, "SALE:S-1").status == QualifyingEventRecord.STATUS_PROCESSED

    def test_cycle_gives_up_after_max_attempts(self, session, chain, cycle, make_runner):
        ingest(session, ultra_sale(10, sale_id="S-CYCLE"))
        runner = make_runner(maxAttempts=2)

        asyncio.run(runner.runOnce())
        summary = asyncio.run(runner.runOnce())

        assert summary.unresolved == 1

        record = event_record(session, "SALE:S-CYCLE")
        assert record.status == QualifyingEventRecord.STATUS_FAILED
        assert record.attempts == 2

        queued = session.query(UnresolvedCommission).all()
        assert [(u.sourceEventKey, u.reason) for u in queued] == [
            ("SALE:S-CYCLE", UnresolvedCommission.REASON_INTEGRITY),
        ]

        # Failed events are not claimed again
        assert asyncio.run(runner.runOnce()).eventsProcessed == 0

    def test_unknown_source_distributor(self, session, chain, make_runner):
        ingest(session, ultra_sale(999, sale_id="S-GHOST"))
        runner = make_runner(maxAttempts=2)

        first = asyncio.run(runner.runOnce())
        assert first.released == 1
        assert event_record(session, "SALE:S-GHOST").status == QualifyingEventRecord.STATUS_PENDING

        asyncio.run(runner.runOnce())

        assert event_record(session, "SALE:S-GHOST").status == QualifyingEventRecord.STATUS_FAILED
        queued = session.query(UnresolvedCommission).one()
        assert queued.reason == UnresolvedCommission.REASON_UNKNOWN_SOURCE


# =============================================================================
# TEST CLASS: Bounded runs
# =============================================================================

class TestBoundedRuns:
    """Batch size, cancellation and the run deadline."""

    @pytest.fixture
    def three_sales(self, session, chain):
        for sale_id in ("S-1", "S-2", "S-3"):
            ingest(session, ultra_sale(4, sale_id=sale_id))

    def test_batch_size(self, session, three_sales, make_runner):
        runner = make_runner(batchSize=2)

        assert asyncio.run(runner.runOnce()).eventsProcessed == 2
        assert asyncio.run(runner.runOnce()).eventsProcessed == 1
        assert asyncio.run(runner.runOnce()).eventsProcessed == 0

    def test_cancel_releases_remaining_claims(self, session, three_sales, make_runner):
        runner = make_runner()

        def cancel_after_first(data):
            runner.cancel()

        eventBus.subscribe(MLMEvents.COMMISSION_COMPUTED, cancel_after_first)

        summary = asyncio.run(runner.runOnce())

        assert summary.cancelled is True
        assert summary.eventsProcessed == 1
        assert summary.released == 2

        session.expire_all()
        pending = session.query(QualifyingEventRecord).filter_by(
            status=QualifyingEventRecord.STATUS_PENDING
        ).all()
        assert len(pending) == 2
        assert all(r.attempts == 0 and r.claimToken is None for r in pending)

    def test_timeout_releases_claims(self, session, three_sales, make_runner):
        runner = make_runner(maxDurationSeconds=1e-9)

        summary = asyncio.run(runner.runOnce())

        assert summary.timedOut is True
        assert summary.eventsProcessed == 0
        assert summary.released == 3

        session.expire_all()
        assert session.query(QualifyingEventRecord).filter_by(
            status=QualifyingEventRecord.STATUS_PENDING
        ).count() == 3

    def test_partitions_take_turns(self, session, three_sales, add_distributor, make_runner):
        """
        TEST: Three sales under root 1, one under root 20; a run cut after two
        events has served both partitions.
        """
        add_distributor(20, rank="Manager")
        add_distributor(21, sponsor=20)
        ingest(session, ultra_sale(21, sale_id="S-20"))
        runner = make_runner()
        processed = []

        def cancel_after_two(data):
            processed.append(data["eventKey"])
            if len(processed) == 2:
                runner.cancel()

        eventBus.subscribe(MLMEvents.COMMISSION_COMPUTED, cancel_after_two)

        summary = asyncio.run(runner.runOnce())

        assert processed == ["SALE:S-1", "SALE:S-20"]
        assert summary.eventsProcessed == 2
        assert summary.released == 2


# =============================================================================
# TEST CLASS: CAE trigger
# =============================================================================

class TestCaeTrigger:
    """The CAE trigger comes from the rule version in force."""

    @pytest.fixture
    def recruit(self, chain, add_distributor):
        """5 joins under 3 (ETT) in January 2027."""
        add_distributor(5, sponsor=3, join_date=date(2027, 1, 5))

    def test_versioned_trigger_end_to_end(self, session, recruit, make_runner):
        """
        TEST: Trigger 30: 25 points queue nothing, 31 points later in the month pay CAE.
        """
        rules = cae_trigger_rules(30)
        service = EventIngestionService(session, rules=rules)
        runner = make_runner(rulesLoader=lambda: rules)

        assert asyncio.run(service.ingestPointsUpdate(5, 25, datetime(2027, 1, 20))) is None
        assert asyncio.run(runner.runOnce()).eventsProcessed == 0

        record = asyncio.run(service.ingestPointsUpdate(5, 31, datetime(2027, 1, 28)))
        assert record.eventKey == "CAE:5:2027-01"

        summary = asyncio.run(runner.runOnce())

        assert summary.eventsProcessed == 1
        assert summary.lineItemsCreated == 2
        assert summary.obligationsCreated == 2
        assert summary.unresolved == 0

        session.expire_all()
        items = session.query(CommissionLineItem).filter_by(
            commissionType="CAE"
        ).order_by(CommissionLineItem.generation).all()
        assert [(i.beneficiaryID, Decimal(str(i.amount))) for i in items] == [
            (3, Decimal("40")),
            (2, Decimal("100")),
        ]

    def test_event_below_trigger_is_queued(self, session, recruit, make_runner):
        ingest(session, RecruitThresholdEvent(recruitId=5, monthKey="2027-01", points=25))
        runner = make_runner(rulesLoader=lambda: cae_trigger_rules(30))

        summary = asyncio.run(runner.runOnce())

        assert summary.eventsProcessed == 1
        assert summary.lineItemsCreated == 0
        assert summary.unresolved == 1

        session.expire_all()
        queued = session.query(UnresolvedCommission).one()
        assert (queued.sourceEventKey, queued.reason) == ("CAE:5:2027-01", UnresolvedCommission.REASON_BELOW_TRIGGER)


# =============================================================================
# TEST CLASS: Promotions
# =============================================================================

class TestPromotions:
    """Processed position changes extend the promotion history."""

    PROMOTION = PositionChangeEvent(100, Rank.ETT, date(2026, 1, 1))

    @pytest.fixture
    def deep_line(self, add_distributor):
        """100 (ETT, no history) <- 101 <- ... <- 107, 107 is 7 generations below 100."""
        add_distributor(100, rank="ETT")
        for node_id in range(101, 108):
            add_distributor(node_id, sponsor=node_id - 1)

    def test_promotion_appended_to_history(self, session, deep_line, make_runner):
        ingest(session, self.PROMOTION)

        summary = asyncio.run(make_runner().runOnce())

        assert summary.eventsProcessed == 1
        assert summary.promotionsRecorded == 1
        assert summary.lineItemsCreated == 0

        session.expire_all()
        promotion = session.query(RankPromotion).one()
        assert promotion.distributorID == 100
        assert promotion.newRank == "ETT"
        assert promotion.effectiveDate == date(2026, 1, 1)
        assert promotion.previousRank is None
        assert promotion.notes == "RANK:100:ETT:2026-01-01"

    def test_promotion_opens_cca_window(self, session, deep_line, make_runner):
        """
        TEST: ETT promotion effective 2026-01-01, then a 7th-generation Ultra sale in January 2027.

        Expected: CCA 5% of 30 to distributor 100, nothing queued for review
        """
        runner = make_runner()
        ingest(session, self.PROMOTION)
        asyncio.run(runner.runOnce())

        ingest(session, ultra_sale(107, sale_id="S-DEEP"))
        asyncio.run(runner.runOnce())

        session.expire_all()
        cca = session.query(CommissionLineItem).filter_by(commissionType="CCA").all()
        assert [(i.beneficiaryID, i.generation, Decimal(str(i.amount))) for i in cca] == [
            (100, 7, Decimal("1.5")),
        ]
        assert session.query(UnresolvedCommission).filter_by(
            reason=UnresolvedCommission.REASON_MISSING_PROMOTION_HISTORY
        ).count() == 0

    def test_reprocessing_keeps_one_row(self, session, deep_line, make_runner):
        ingest(session, self.PROMOTION)
        asyncio.run(make_runner().runOnce())

        record = event_record(session, self.PROMOTION.eventKey)
        record.status = QualifyingEventRecord.STATUS_PENDING
        session.commit()

        summary = asyncio.run(make_runner().runOnce())

        assert summary.eventsProcessed == 1
        assert summary.promotionsRecorded == 0
        session.expire_all()
        assert session.query(RankPromotion).count() == 1

    def test_crm_row_reused(self, session, add_distributor, make_runner):
        add_distributor(100, rank="ETT", promotions=[("ETT", date(2026, 1, 1))])
        ingest(session, self.PROMOTION)

        summary = asyncio.run(make_runner().runOnce())

        assert summary.promotionsRecorded == 0
        session.expire_all()
        assert session.query(RankPromotion).count() == 1


# =============================================================================
# TEST CLASS: Concurrent runs
# =============================================================================

class TestConcurrentRuns:
    """Two runners over one inbox never process an event twice."""

    SALES = ("S-1", "S-2", "S-3", "S-4")

    def test_two_runners_gathered(self, session, chain, make_runner):
        for sale_id in self.SALES:
            ingest(session, ultra_sale(4, sale_id=sale_id))

        async def hand_over(data):
            # Let the other runner go between commits
            await asyncio.sleep(0)

        eventBus.subscribe(MLMEvents.COMMISSION_COMPUTED, hand_over)
        first = make_runner(batchSize=2)
        second = make_runner(batchSize=2)

        async def run_both():
            return await asyncio.gather(first.runOnce(), second.runOnce())

        summaries = asyncio.run(run_both())

        assert sorted(s.eventsProcessed for s in summaries) == [2, 2]
        assert sum(s.eventsProcessed for s in summaries) == len(self.SALES)
        assert sum(s.lineItemsCreated for s in summaries) == 16
        assert sum(s.duplicatesSkipped for s in summaries) == 0

        session.expire_all()
        for sale_id in self.SALES:
            items = session.query(CommissionLineItem).filter_by(sourceEventKey=f"SALE:{sale_id}").all()
            assert len(items) == 4
            assert session.query(PaymentObligation).filter(
                PaymentObligation.lineItemID.in_([i.lineItemID for i in items])
            ).count() == 4
            assert event_record(session, f"SALE:{sale_id}").status == QualifyingEventRecord.STATUS_PROCESSED
        assert session.query(PaymentObligation).count() == 16
