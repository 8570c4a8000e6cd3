# mlm_system/services/commission_service.py
"""
Commission calculation - turns one qualifying event into ordered line items.

Pure computation over a network snapshot and rule tables: no session, no
clock. The caller passes computedAt so that compute() is deterministic.

    SaleEvent             -> CVD (seller + upline) and CCA (7th generation)
    RecruitThresholdEvent -> CAE (leadership bonus, open line)
    PositionChangeEvent   -> no line items (the runner appends the promotion history)
"""
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Tuple
import logging

from mlm_system.config.ranks import CommissionType, MONEY_QUANTUM, Rank, CCA_GENERATION
from mlm_system.config.rule_tables import RuleTableProvider, RuleTableVersion, normalize_product
from mlm_system.events.qualifying import (
    QualifyingEvent,
    SaleEvent,
    RecruitThresholdEvent,
    PositionChangeEvent,
)
from mlm_system.network.snapshot import NetworkSnapshot, DistributorNode
from mlm_system.utils.calendar_rules import add_years, parse_month_key
from mlm_system.utils.chain_walker import ChainWalker

logger = logging.getLogger(__name__)

REASON_RULE_NOT_FOUND = 'rule_not_found'
REASON_MISSING_PROMOTION_HISTORY = 'missing_promotion_history'
REASON_BELOW_TRIGGER = 'below_trigger'


@dataclass(frozen=True)
class ComputedLineItem:
    sourceEventKey: str
    beneficiaryId: int
    beneficiaryRank: str
    generation: int
    commissionType: str
    amount: Decimal
    rate: Optional[Decimal]
    ruleVersion: str
    ruleGeneration: int
    referenceDate: date
    computedAt: datetime
    notes: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, int]:
        return self.sourceEventKey, self.commissionType, self.beneficiaryId


@dataclass(frozen=True)
class UnresolvedItem:
    sourceEventKey: str
    commissionType: Optional[str]
    beneficiaryId: Optional[int]
    generation: Optional[int]
    reason: str
    details: str


@dataclass(frozen=True)
class CommissionResult:
    lineItems: Tuple[ComputedLineItem, ...] = ()
    unresolved: Tuple[UnresolvedItem, ...] = ()

    @property
    def totalAmount(self) -> Decimal:
        return sum((item.amount for item in self.lineItems), Decimal("0"))


@dataclass
class _Accumulator:
    """Collects items for one event, enforcing one item per (type, beneficiary)."""
    event: QualifyingEvent
    version: RuleTableVersion
    computedAt: datetime
    lineItems: List[ComputedLineItem] = field(default_factory=list)
    unresolved: List[UnresolvedItem] = field(default_factory=list)

    def add(
            self,
            commissionType: CommissionType,
            beneficiary: DistributorNode,
            generation: int,
            ruleGeneration: int,
            amount: Decimal,
            rate: Optional[Decimal],
            referenceDate: date,
            notes: str
    ) -> bool:
        amount = amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)
        if amount <= 0:
            return False

        key = (self.event.eventKey, commissionType.value, beneficiary.distributorId)
        if any(item.key == key for item in self.lineItems):
            logger.warning(f"Duplicate line item {key} skipped")
            return False

        self.lineItems.append(ComputedLineItem(
            sourceEventKey=self.event.eventKey,
            beneficiaryId=beneficiary.distributorId,
            beneficiaryRank=beneficiary.rank.value,
            generation=generation,
            commissionType=commissionType.value,
            amount=amount,
            rate=rate,
            ruleVersion=self.version.versionId,
            ruleGeneration=ruleGeneration,
            referenceDate=referenceDate,
            computedAt=self.computedAt,
            notes=notes,
        ))
        return True

    def miss(
            self,
            commissionType: CommissionType,
            beneficiaryId: Optional[int],
            generation: Optional[int],
            reason: str,
            details: str
    ):
        logger.warning(f"{self.event.eventKey}: {details}")
        self.unresolved.append(UnresolvedItem(
            sourceEventKey=self.event.eventKey,
            commissionType=commissionType.value,
            beneficiaryId=beneficiaryId,
            generation=generation,
            reason=reason,
            details=details,
        ))

    def result(self) -> CommissionResult:
        return CommissionResult(tuple(self.lineItems), tuple(self.unresolved))


class CommissionCalculator:
    """Computes CVD, CAE and CCA line items for qualifying events."""

    def compute(
            self,
            event: QualifyingEvent,
            network: NetworkSnapshot,
            rules: RuleTableProvider,
            computedAt: datetime
    ) -> CommissionResult:
        """
        Compute all line items for an event.

        Business conditions (missing rule, missing history) end up in
        result.unresolved; remaining items are still computed.

        Raises:
            KeyError: Source distributor not in the snapshot
            IntegrityError: Sponsor cycle on the walked chain
        """
        if isinstance(event, PositionChangeEvent):
            logger.debug(f"{event.eventKey}: position change, no line items")
            return CommissionResult()

        version = rules.versionFor(event.businessDate)
        if version is None:
            logger.warning(f"{event.eventKey}: no rule table version for {event.businessDate}")
            commissionType = (
                CommissionType.CAE if isinstance(event, RecruitThresholdEvent) else CommissionType.CVD
            )
            return CommissionResult(unresolved=(UnresolvedItem(
                sourceEventKey=event.eventKey,
                commissionType=commissionType.value,
                beneficiaryId=None,
                generation=None,
                reason=REASON_RULE_NOT_FOUND,
                details=f"No rule table version covers {event.businessDate}",
            ),))

        acc = _Accumulator(event=event, version=version, computedAt=computedAt)

        if isinstance(event, SaleEvent):
            self._computeCvd(acc, event, network, rules)
            self._computeCca(acc, event, network, rules)
        elif isinstance(event, RecruitThresholdEvent):
            self._computeCae(acc, event, network, rules)
        else:
            raise TypeError(f"Unsupported qualifying event {type(event).__name__}")

        result = acc.result()
        logger.debug(
            f"{event.eventKey}: {len(result.lineItems)} line items "
            f"({result.totalAmount}), {len(result.unresolved)} unresolved"
        )
        return result

    # ═══════════════════════════════════════════════════════════════════════
    # CVD - direct sale commission
    # ═══════════════════════════════════════════════════════════════════════

    def _computeCvd(
            self,
            acc: _Accumulator,
            event: SaleEvent,
            network: NetworkSnapshot,
            rules: RuleTableProvider
    ):
        version = acc.version
        product = normalize_product(event.productType)
        eligibility = version.eligibilityFor(CommissionType.CVD.value)
        effectiveDate = event.acquisitionDate
        referenceDate = event.installationDate or event.acquisitionDate

        baseAmount = event.baseAmount
        if baseAmount is None:
            baseAmount = version.productBaseAmounts.get(product)

        points = event.sellerMonthlyPoints
        if points is None:
            points = version.productPoints.get(product, 0)

        def pay(node: DistributorNode, generation: int):
            rule = rules.lookup(CommissionType.CVD.value, product, generation, effectiveDate)
            if rule is None:
                acc.miss(
                    CommissionType.CVD, node.distributorId, generation, REASON_RULE_NOT_FOUND,
                    f"No CVD rule for {product} generation {generation} on {effectiveDate}"
                )
                return
            try:
                amount = rule.amountFor(baseAmount, points)
            except ValueError:
                acc.miss(
                    CommissionType.CVD, node.distributorId, generation, REASON_RULE_NOT_FOUND,
                    f"No base amount for {product}"
                )
                return
            acc.add(
                CommissionType.CVD, node, generation, generation,
                amount, rule.appliedRate(points), referenceDate,
                f"CVD {product} generation {generation}"
            )

        # Seller, generation 0
        seller = network.getNode(event.sellerId)
        if seller is None:
            raise KeyError(f"Seller {event.sellerId} not in snapshot")
        if eligibility.accepts(seller.rank, seller.isActive, seller.monthlyPoints):
            pay(seller, 0)
        else:
            logger.info(f"{event.eventKey}: seller {seller.distributorId} not CVD-eligible")

        # Upline, no compression: ineligible ancestors keep their generation slot
        def visit(ancestor: DistributorNode, generation: int) -> bool:
            if eligibility.accepts(ancestor.rank, ancestor.isActive, ancestor.monthlyPoints):
                pay(ancestor, generation)
            else:
                logger.debug(
                    f"{event.eventKey}: ancestor {ancestor.distributorId} "
                    f"(gen {generation}) not CVD-eligible"
                )
            return True

        ChainWalker(network).walk_upline(event.sellerId, visit, max_depth=eligibility.maxGeneration)

    # ═══════════════════════════════════════════════════════════════════════
    # CAE - leadership bonus on a recruit reaching the trigger points
    # ═══════════════════════════════════════════════════════════════════════

    def _computeCae(
            self,
            acc: _Accumulator,
            event: RecruitThresholdEvent,
            network: NetworkSnapshot,
            rules: RuleTableProvider
    ):
        version = acc.version
        eligibility = version.eligibilityFor(CommissionType.CAE.value)
        policy = version.caePolicy
        referenceDate = event.businessDate

        recruit = network.getNode(event.recruitId)
        if recruit is None:
            raise KeyError(f"Recruit {event.recruitId} not in snapshot")

        if event.points < eligibility.triggerPoints:
            # The recruit's monthly key is spent either way
            acc.miss(
                CommissionType.CAE, event.recruitId, None, REASON_BELOW_TRIGGER,
                f"Recruit {event.recruitId} reached {event.points} points, "
                f"rules {version.versionId} trigger at {eligibility.triggerPoints}"
            )
            return

        month = parse_month_key(event.monthKey)
        if (recruit.joinDate.year, recruit.joinDate.month) != (month.year, month.month):
            logger.info(
                f"{event.eventKey}: recruit joined {recruit.joinDate}, "
                f"threshold must be reached in the joining month"
            )
            return

        rankGenerations = Counter()
        highestPaid: Optional[Rank] = None
        previousRank: Optional[Rank] = None

        for index, ancestor in enumerate(network.getAncestors(event.recruitId)):
            generation = index + 1

            if generation > policy.maxGenerations:
                # Open line: keep climbing only along a run of equal ranks
                if not (policy.extendOnSameRank and ancestor.rank == previousRank):
                    break
            previousRank = ancestor.rank

            if not eligibility.accepts(ancestor.rank, ancestor.isActive, ancestor.monthlyPoints):
                continue

            if highestPaid is not None and ancestor.rank < highestPaid:
                logger.debug(
                    f"{event.eventKey}: {ancestor.rank.value} at gen {generation} "
                    f"below already paid {highestPaid.value}"
                )
                continue

            rankGenerations[ancestor.rank] += 1
            rankGeneration = rankGenerations[ancestor.rank]
            if rankGeneration > policy.maxSameRankGenerations:
                continue

            rule = rules.lookup(
                CommissionType.CAE.value, ancestor.rank.value, rankGeneration, referenceDate
            )
            if rule is None:
                acc.miss(
                    CommissionType.CAE, ancestor.distributorId, generation, REASON_RULE_NOT_FOUND,
                    f"No CAE rule for {ancestor.rank.value} rank generation {rankGeneration} "
                    f"on {referenceDate}"
                )
                continue

            amount = rule.amountFor(None)
            if acc.add(
                    CommissionType.CAE, ancestor, generation, rankGeneration,
                    amount, rule.appliedRate(), referenceDate,
                    f"CAE {ancestor.rank.value} rank generation {rankGeneration} "
                    f"for recruit {event.recruitId}"
            ):
                highestPaid = ancestor.rank if highestPaid is None else max(highestPaid, ancestor.rank)

    # ═══════════════════════════════════════════════════════════════════════
    # CCA - deep network royalty
    # ═══════════════════════════════════════════════════════════════════════

    def _computeCca(
            self,
            acc: _Accumulator,
            event: SaleEvent,
            network: NetworkSnapshot,
            rules: RuleTableProvider
    ):
        version = acc.version
        eligibility = version.eligibilityFor(CommissionType.CCA.value)
        generation = eligibility.maxGeneration or CCA_GENERATION
        product = normalize_product(event.productType)
        saleDate = event.acquisitionDate

        beneficiary = ChainWalker(network).ancestor_at(event.sellerId, generation)
        if beneficiary is None:
            return

        beneficiaryId = beneficiary.distributorId
        if eligibility.requireActive and not beneficiary.isActive:
            logger.debug(f"{event.eventKey}: CCA beneficiary {beneficiaryId} inactive")
            return

        if not network.hasPromotionHistory(beneficiaryId):
            if beneficiary.rank >= eligibility.minRank:
                acc.miss(
                    CommissionType.CCA, beneficiaryId, generation, REASON_MISSING_PROMOTION_HISTORY,
                    f"Distributor {beneficiaryId} is {beneficiary.rank.value} but has no "
                    f"promotion history to anchor the CCA window"
                )
            return

        attainedOn = network.rankAttainedOn(beneficiaryId, eligibility.minRank)
        heldRank = network.rankOn(beneficiaryId, saleDate)
        if attainedOn is None or attainedOn > saleDate or heldRank < eligibility.minRank:
            logger.debug(
                f"{event.eventKey}: CCA beneficiary {beneficiaryId} not "
                f"{eligibility.minRank.value} on {saleDate}"
            )
            return

        if eligibility.windowYears and saleDate >= add_years(attainedOn, eligibility.windowYears):
            logger.debug(
                f"{event.eventKey}: CCA window of {beneficiaryId} "
                f"(since {attainedOn}) closed on {saleDate}"
            )
            return

        rule = rules.lookup(CommissionType.CCA.value, product, generation, saleDate)
        if rule is None:
            acc.miss(
                CommissionType.CCA, beneficiaryId, generation, REASON_RULE_NOT_FOUND,
                f"No CCA rule for {product} generation {generation} on {saleDate}"
            )
            return

        baseAmount = event.baseAmount
        if baseAmount is None:
            baseAmount = version.productBaseAmounts.get(product)

        try:
            amount = rule.amountFor(baseAmount)
        except ValueError:
            acc.miss(
                CommissionType.CCA, beneficiaryId, generation, REASON_RULE_NOT_FOUND,
                f"No base amount for {product}"
            )
            return

        acc.add(
            CommissionType.CCA, beneficiary, generation, generation,
            amount, rule.appliedRate(), saleDate,
            f"CCA {product} on sale of {event.sellerId}"
        )
