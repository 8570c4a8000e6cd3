"""
Versioned commission rule tables.

A RuleTableVersion is an immutable set of rates keyed by
(commissionType, position, generation) plus the eligibility predicates and
product tables in force for its date range. Versions are append-only: a new
version closes the previous open-ended one, nothing is edited in place, so
recomputing an old event always resolves against the rates of its own date.

Positions are product keys for CVD/CCA ('freebox_ultra') and rank values for
CAE ('Manager'). For CAE the generation is the rank generation: 1 for the
first ancestor of that rank in the line, 2 for the next one (open line).
"""
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple

from mlm_system.config.ranks import (
    Rank,
    CommissionType,
    CAE_TRIGGER_POINTS,
    CCA_GENERATION,
    CCA_WINDOW_YEARS,
    CCA_RATE,
)
from mlm_system.errors import RuleNotFoundError

logger = logging.getLogger(__name__)


RULE_KIND_FLAT = "flat"
RULE_KIND_RATE = "rate"
RULE_KIND_TIERED = "tiered"


def normalize_product(productType: str) -> str:
    """
    Normalize CRM product labels to rule-table keys.

    'Freebox Ultra' -> 'freebox_ultra', '5G' / 'Forfait 5G' -> 'forfait_5g'
    """
    label = str(productType or "").strip()
    if "5g" in label.lower():
        return "forfait_5g"
    return label.lower().replace("-", " ").replace(" ", "_")


@dataclass(frozen=True)
class RuleValue:
    """Single rule table entry: flat amount, rate of base amount or points tiers."""
    kind: str
    value: Decimal = Decimal("0")
    tiers: Tuple[Tuple[int, Decimal], ...] = ()

    def appliedRate(self, points: int = 0) -> Decimal:
        """Rate (for 'rate') or flat amount (for 'flat' and 'tiered') used."""
        if self.kind == RULE_KIND_TIERED:
            selected = self.tiers[0][1] if self.tiers else Decimal("0")
            for minPoints, amount in self.tiers:
                if points >= minPoints:
                    selected = amount
            return selected
        return self.value

    def amountFor(self, baseAmount: Optional[Decimal], points: int = 0) -> Decimal:
        """
        Commission amount for this entry.

        Raises:
            ValueError: If a rate entry is applied without a base amount
        """
        if self.kind == RULE_KIND_RATE:
            if baseAmount is None:
                raise ValueError("Rate rule requires a base amount")
            return Decimal(baseAmount) * self.value
        return self.appliedRate(points)


@dataclass(frozen=True)
class EligibilityRule:
    """Who may receive a commission type."""
    minRank: Rank = Rank.CONSEILLER
    requireActive: bool = True
    minMonthlyPoints: int = 0
    maxGeneration: int = 0
    triggerPoints: int = 0
    windowYears: Optional[int] = None

    def accepts(self, rank: Rank, isActive: bool, monthlyPoints: int) -> bool:
        if self.requireActive and not isActive:
            return False
        if rank < self.minRank:
            return False
        return monthlyPoints >= self.minMonthlyPoints


@dataclass(frozen=True)
class CaeWalkPolicy:
    """
    Upline walk for the leadership bonus.

    maxGenerations: ancestors always visited (path distance)
    extendOnSameRank: keep climbing past the limit while the next ancestor
        holds the same rank as the previous one
    maxSameRankGenerations: rank generations that can be paid (1st, 2nd, ...)
    """
    maxGenerations: int = 2
    extendOnSameRank: bool = True
    maxSameRankGenerations: int = 2


@dataclass(frozen=True)
class RuleTableVersion:
    versionId: str
    effectiveFrom: date
    effectiveTo: Optional[date] = None  # exclusive, None = open-ended
    entries: Mapping[Tuple[str, str, int], RuleValue] = field(default_factory=dict)
    eligibility: Mapping[str, EligibilityRule] = field(default_factory=dict)
    productPoints: Mapping[str, int] = field(default_factory=dict)
    productBaseAmounts: Mapping[str, Decimal] = field(default_factory=dict)
    caePolicy: CaeWalkPolicy = CaeWalkPolicy()

    def __post_init__(self):
        # Freeze the mappings so a loaded version can't drift mid-run
        for name in ("entries", "eligibility", "productPoints", "productBaseAmounts"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))

    def covers(self, effectiveDate: date) -> bool:
        if effectiveDate < self.effectiveFrom:
            return False
        return self.effectiveTo is None or effectiveDate < self.effectiveTo

    def entry(self, commissionType: str, position: str, generation: int) -> Optional[RuleValue]:
        return self.entries.get((commissionType, position, generation))

    def eligibilityFor(self, commissionType: str) -> EligibilityRule:
        return self.eligibility.get(commissionType, EligibilityRule())


class RuleTableProvider:
    """
    Lookup over an append-only list of rule table versions.
    Pure data, no side effects besides appendVersion.
    """

    def __init__(self, versions: Iterable[RuleTableVersion] = ()):
        self._versions: Tuple[RuleTableVersion, ...] = ()
        for version in sorted(versions, key=lambda v: v.effectiveFrom):
            self.appendVersion(version)

    @property
    def versions(self) -> Tuple[RuleTableVersion, ...]:
        return self._versions

    def appendVersion(self, version: RuleTableVersion) -> None:
        """
        Append a new version, closing the previous open-ended one.

        Raises:
            ValueError: If the version is back-dated, overlaps or leaves a gap
        """
        if any(v.versionId == version.versionId for v in self._versions):
            raise ValueError(f"Rule table version {version.versionId} already exists")

        if self._versions:
            last = self._versions[-1]

            if version.effectiveFrom <= last.effectiveFrom:
                raise ValueError(
                    f"Version {version.versionId} starts {version.effectiveFrom}, "
                    f"not after {last.versionId} ({last.effectiveFrom})"
                )

            if last.effectiveTo is None:
                last = replace(last, effectiveTo=version.effectiveFrom)
            elif last.effectiveTo != version.effectiveFrom:
                raise ValueError(
                    f"Version {version.versionId} starts {version.effectiveFrom} but "
                    f"{last.versionId} ends {last.effectiveTo}"
                )

            self._versions = self._versions[:-1] + (last,)

        self._versions = self._versions + (version,)
        logger.info(
            f"Rule table version {version.versionId} appended "
            f"(from {version.effectiveFrom}, {len(version.entries)} entries)"
        )

    def versionFor(self, effectiveDate: date) -> Optional[RuleTableVersion]:
        """Version whose range contains the date, or None."""
        for version in self._versions:
            if version.covers(effectiveDate):
                return version
        return None

    def lookup(
            self,
            commissionType: str,
            position: str,
            generation: int,
            effectiveDate: date
    ) -> Optional[RuleValue]:
        """
        Resolve a rate against the version active on effectiveDate.

        Returns:
            RuleValue, or None when no entry exists (NotFound)
        """
        version = self.versionFor(effectiveDate)
        if version is None:
            logger.warning(f"No rule table version covers {effectiveDate}")
            return None
        return version.entry(commissionType, position, generation)

    def require(
            self,
            commissionType: str,
            position: str,
            generation: int,
            effectiveDate: date
    ) -> RuleValue:
        """
        Same as lookup but raises when nothing matches.

        Raises:
            RuleNotFoundError: If no entry covers the key on that date
        """
        value = self.lookup(commissionType, position, generation, effectiveDate)
        if value is None:
            raise RuleNotFoundError(commissionType, position, generation, effectiveDate)
        return value


# ═══════════════════════════════════════════════════════════════════════════
# DEFAULT TABLES (official barème)
# ═══════════════════════════════════════════════════════════════════════════

PRODUCT_POINTS = {
    "freebox_pop": 4,
    "freebox_essentiel": 5,
    "freebox_ultra": 6,
    "forfait_5g": 1,
}

PRODUCT_BASE_AMOUNTS = {
    "freebox_pop": Decimal("20"),
    "freebox_essentiel": Decimal("25"),
    "freebox_ultra": Decimal("30"),
    "forfait_5g": Decimal("3"),
}

# Seller commission by monthly points tranche: 0-25, 26-50, 51-100, 101+
CVD_TRANCHE_MIN_POINTS = (0, 26, 51, 101)
CVD_SELLER_TRANCHES = {
    "freebox_pop": (50, 60, 70, 80),
    "freebox_essentiel": (50, 70, 90, 110),
    "freebox_ultra": (50, 80, 100, 120),
    "forfait_5g": (10, 10, 10, 10),
}

# Upline share of the product base amount by generation
CVD_UPLINE_RATES = {
    1: Decimal("0.10"),
    2: Decimal("0.05"),
    3: Decimal("0.03"),
}

# Leadership bonus per rank: {rank generation: amount}
CAE_AMOUNTS = {
    Rank.ETT: {1: 40, 2: 0},
    Rank.ETL: {1: 100, 2: 0},
    Rank.MANAGER: {1: 150, 2: 60},
    Rank.RC: {1: 100, 2: 40},
    Rank.RD: {1: 100, 2: 40},
    Rank.RVP: {1: 100, 2: 40},
    Rank.SVP: {1: 120, 2: 40},
}


def build_default_version(
        versionId: str = "2024-01",
        effectiveFrom: date = date(2020, 1, 1)
) -> RuleTableVersion:
    """Build the built-in rule table version."""
    entries: Dict[Tuple[str, str, int], RuleValue] = {}

    for product, amounts in CVD_SELLER_TRANCHES.items():
        tiers = tuple(
            (minPoints, Decimal(amount))
            for minPoints, amount in zip(CVD_TRANCHE_MIN_POINTS, amounts)
        )
        entries[(CommissionType.CVD.value, product, 0)] = RuleValue(RULE_KIND_TIERED, tiers=tiers)

        for generation, rate in CVD_UPLINE_RATES.items():
            entries[(CommissionType.CVD.value, product, generation)] = RuleValue(RULE_KIND_RATE, rate)

        entries[(CommissionType.CCA.value, product, CCA_GENERATION)] = RuleValue(RULE_KIND_RATE, CCA_RATE)

    for rank, amounts in CAE_AMOUNTS.items():
        for rankGeneration, amount in amounts.items():
            entries[(CommissionType.CAE.value, rank.value, rankGeneration)] = RuleValue(
                RULE_KIND_FLAT, Decimal(amount)
            )

    eligibility = {
        CommissionType.CVD.value: EligibilityRule(
            minRank=Rank.CONSEILLER,
            maxGeneration=max(CVD_UPLINE_RATES),
        ),
        CommissionType.CAE.value: EligibilityRule(
            minRank=Rank.ETT,
            triggerPoints=CAE_TRIGGER_POINTS,
        ),
        CommissionType.CCA.value: EligibilityRule(
            minRank=Rank.ETT,
            maxGeneration=CCA_GENERATION,
            windowYears=CCA_WINDOW_YEARS,
        ),
    }

    return RuleTableVersion(
        versionId=versionId,
        effectiveFrom=effectiveFrom,
        entries=entries,
        eligibility=eligibility,
        productPoints=PRODUCT_POINTS,
        productBaseAmounts=PRODUCT_BASE_AMOUNTS,
        caePolicy=CaeWalkPolicy(),
    )


# ═══════════════════════════════════════════════════════════════════════════
# LOADING
# ═══════════════════════════════════════════════════════════════════════════

def _rule_value_from_dict(data: Dict) -> RuleValue:
    kind = data.get("kind", RULE_KIND_FLAT)
    if kind == RULE_KIND_TIERED:
        tiers = tuple(
            (int(minPoints), Decimal(str(amount)))
            for minPoints, amount in sorted(data["tiers"], key=lambda t: int(t[0]))
        )
        return RuleValue(kind, tiers=tiers)
    if kind not in (RULE_KIND_FLAT, RULE_KIND_RATE):
        raise ValueError(f"Unknown rule kind '{kind}'")
    return RuleValue(kind, Decimal(str(data["value"])))


def version_from_dict(data: Dict) -> RuleTableVersion:
    """
    Build a version from its JSON representation.

    Expected format:
        {
          "versionId": "2025-03",
          "effectiveFrom": "2025-03-01",
          "entries": [
            {"type": "CVD", "position": "freebox_ultra", "generation": 1, "kind": "rate", "value": "0.10"},
            {"type": "CVD", "position": "freebox_ultra", "generation": 0, "kind": "tiered",
             "tiers": [[0, "50"], [26, "80"]]}
          ],
          "eligibility": {"CAE": {"minRank": "ETT", "triggerPoints": 25}},
          "productPoints": {"freebox_ultra": 6},
          "productBaseAmounts": {"freebox_ultra": "30"},
          "caePolicy": {"maxGenerations": 2, "extendOnSameRank": true}
        }

    Raises:
        ValueError, KeyError: If the document is malformed
    """
    entries = {}
    for raw in data.get("entries", []):
        commissionType = CommissionType(raw["type"]).value
        position = raw["position"]
        if commissionType == CommissionType.CAE.value:
            position = Rank.parse(position).value
        else:
            position = normalize_product(position)
        entries[(commissionType, position, int(raw["generation"]))] = _rule_value_from_dict(raw)

    eligibility = {}
    for typeKey, raw in data.get("eligibility", {}).items():
        eligibility[CommissionType(typeKey).value] = EligibilityRule(
            minRank=Rank.parse(raw.get("minRank", Rank.CONSEILLER.value)),
            requireActive=bool(raw.get("requireActive", True)),
            minMonthlyPoints=int(raw.get("minMonthlyPoints", 0)),
            maxGeneration=int(raw.get("maxGeneration", 0)),
            triggerPoints=int(raw.get("triggerPoints", 0)),
            windowYears=raw.get("windowYears"),
        )

    effectiveTo = data.get("effectiveTo")

    return RuleTableVersion(
        versionId=str(data["versionId"]),
        effectiveFrom=date.fromisoformat(data["effectiveFrom"]),
        effectiveTo=date.fromisoformat(effectiveTo) if effectiveTo else None,
        entries=entries,
        eligibility=eligibility,
        productPoints={
            normalize_product(k): int(v) for k, v in data.get("productPoints", PRODUCT_POINTS).items()
        },
        productBaseAmounts={
            normalize_product(k): Decimal(str(v))
            for k, v in data.get("productBaseAmounts", PRODUCT_BASE_AMOUNTS).items()
        },
        caePolicy=CaeWalkPolicy(**data.get("caePolicy", {})),
    )


def load_rule_tables(path: Optional[str] = None) -> RuleTableProvider:
    """
    Load rule tables from a JSON file, falling back to the built-in version.

    Args:
        path: JSON file with a list of versions (defaults to RULE_TABLES_PATH)

    Returns:
        RuleTableProvider with all versions appended in date order
    """
    if path is None:
        from config import Config
        path = Config.get(Config.RULE_TABLES_PATH)

    if not path:
        logger.debug("RULE_TABLES_PATH not set, using built-in rule tables")
        return RuleTableProvider([build_default_version()])

    with open(path, encoding="utf-8") as fh:
        raw_versions = json.load(fh)

    provider = RuleTableProvider(version_from_dict(raw) for raw in raw_versions)
    logger.info(f"Loaded {len(provider.versions)} rule table versions from {path}")
    return provider
