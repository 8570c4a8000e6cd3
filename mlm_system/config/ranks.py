"""
MLM ranks, commission types and fixed constants.
"""
from enum import Enum
from decimal import Decimal
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class Rank(Enum):
    """MLM position, declared from lowest to highest."""
    CONSEILLER = "Conseiller"
    ETT = "ETT"
    ETL = "ETL"
    MANAGER = "Manager"
    RC = "RC"
    RD = "RD"
    RVP = "RVP"
    SVP = "SVP"

    @classmethod
    def parse(cls, value) -> "Rank":
        """
        Parse a rank coming from the CRM ('ett', 'Manager', 'CQ', ...).

        Raises:
            ValueError: If the value is not a known position
        """
        if isinstance(value, Rank):
            return value

        normalized = str(value or "").strip().lower()
        # Qualified advisors (CQ) and new vendors carry no leadership position
        if normalized in ("", "cq", "nouveau", "conseiller"):
            return cls.CONSEILLER

        for rank in cls:
            if rank.value.lower() == normalized:
                return rank

        raise ValueError(f"Unknown rank '{value}'")

    @property
    def level(self) -> int:
        return RANK_ORDER.index(self)

    def __ge__(self, other):
        if not isinstance(other, Rank):
            return NotImplemented
        return self.level >= other.level

    def __gt__(self, other):
        if not isinstance(other, Rank):
            return NotImplemented
        return self.level > other.level

    def __le__(self, other):
        if not isinstance(other, Rank):
            return NotImplemented
        return self.level <= other.level

    def __lt__(self, other):
        if not isinstance(other, Rank):
            return NotImplemented
        return self.level < other.level


RANK_ORDER = list(Rank)


def parse_rank_or_none(value) -> Optional[Rank]:
    """Parse rank, logging and returning None for unknown values."""
    try:
        return Rank.parse(value)
    except ValueError:
        logger.warning(f"Unknown rank '{value}', ignoring")
        return None


class CommissionType(Enum):
    """Commission families produced by the engine."""
    CVD = "CVD"  # direct-sale commission
    CAE = "CAE"  # leadership bonus (Commission Animation Equipe)
    CCA = "CCA"  # deep-network royalty (Commission sur Chiffre d'Affaires)


class EventType(Enum):
    """Qualifying event kinds accepted by the inbox."""
    SALE = "sale"
    RECRUIT_THRESHOLD = "recruit_threshold"
    POSITION_CHANGE = "position_change"


# Constants (these can stay hardcoded as they don't change)
MONEY_QUANTUM = Decimal("0.01")
CAE_TRIGGER_POINTS = 25
CCA_GENERATION = 7
CCA_WINDOW_YEARS = 3
CCA_RATE = Decimal("0.05")
