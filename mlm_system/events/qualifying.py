# mlm_system/events/qualifying.py
"""
Qualifying events - the closed set of business facts that can earn commissions.

    SaleEvent              SALE:<saleId>                     -> CVD, CCA
    RecruitThresholdEvent  CAE:<recruitId>:<YYYY-MM>         -> CAE
    PositionChangeEvent    RANK:<distributorId>:<rank>:<date> -> nothing directly

Events are immutable; the natural key makes ingestion idempotent.
"""
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from mlm_system.config.ranks import EventType, Rank
from mlm_system.utils.calendar_rules import month_end, parse_month_key


@dataclass(frozen=True)
class SaleEvent:
    saleId: str
    sellerId: int
    productType: str
    acquisitionDate: date
    installationDate: Optional[date] = None
    baseAmount: Optional[Decimal] = None
    sellerMonthlyPoints: Optional[int] = None

    eventType = EventType.SALE

    @property
    def eventKey(self) -> str:
        return f"SALE:{self.saleId}"

    @property
    def sourceDistributorId(self) -> int:
        return self.sellerId

    @property
    def businessDate(self) -> date:
        return self.acquisitionDate

    def toPayload(self) -> Dict[str, Any]:
        return {
            "saleId": self.saleId,
            "sellerId": self.sellerId,
            "productType": self.productType,
            "acquisitionDate": self.acquisitionDate.isoformat(),
            "installationDate": self.installationDate.isoformat() if self.installationDate else None,
            "baseAmount": str(self.baseAmount) if self.baseAmount is not None else None,
            "sellerMonthlyPoints": self.sellerMonthlyPoints,
        }

    @classmethod
    def fromPayload(cls, payload: Dict[str, Any]) -> "SaleEvent":
        installation = payload.get("installationDate")
        baseAmount = payload.get("baseAmount")
        points = payload.get("sellerMonthlyPoints")
        return cls(
            saleId=str(payload["saleId"]),
            sellerId=int(payload["sellerId"]),
            productType=payload["productType"],
            acquisitionDate=date.fromisoformat(payload["acquisitionDate"]),
            installationDate=date.fromisoformat(installation) if installation else None,
            baseAmount=Decimal(str(baseAmount)) if baseAmount is not None else None,
            sellerMonthlyPoints=int(points) if points is not None else None,
        )


@dataclass(frozen=True)
class RecruitThresholdEvent:
    """A recruit reached the CAE trigger points during a month."""
    recruitId: int
    monthKey: str  # YYYY-MM
    points: int

    eventType = EventType.RECRUIT_THRESHOLD

    @property
    def eventKey(self) -> str:
        return f"CAE:{self.recruitId}:{self.monthKey}"

    @property
    def sourceDistributorId(self) -> int:
        return self.recruitId

    @property
    def businessDate(self) -> date:
        """Qualifying month-end."""
        return month_end(parse_month_key(self.monthKey))

    def toPayload(self) -> Dict[str, Any]:
        return {
            "recruitId": self.recruitId,
            "monthKey": self.monthKey,
            "points": self.points,
        }

    @classmethod
    def fromPayload(cls, payload: Dict[str, Any]) -> "RecruitThresholdEvent":
        return cls(
            recruitId=int(payload["recruitId"]),
            monthKey=payload["monthKey"],
            points=int(payload["points"]),
        )


@dataclass(frozen=True)
class PositionChangeEvent:
    distributorId: int
    newRank: Rank
    effectiveDate: date

    eventType = EventType.POSITION_CHANGE

    @property
    def eventKey(self) -> str:
        return f"RANK:{self.distributorId}:{self.newRank.value}:{self.effectiveDate.isoformat()}"

    @property
    def sourceDistributorId(self) -> int:
        return self.distributorId

    @property
    def businessDate(self) -> date:
        return self.effectiveDate

    def toPayload(self) -> Dict[str, Any]:
        return {
            "distributorId": self.distributorId,
            "newRank": self.newRank.value,
            "effectiveDate": self.effectiveDate.isoformat(),
        }

    @classmethod
    def fromPayload(cls, payload: Dict[str, Any]) -> "PositionChangeEvent":
        return cls(
            distributorId=int(payload["distributorId"]),
            newRank=Rank.parse(payload["newRank"]),
            effectiveDate=date.fromisoformat(payload["effectiveDate"]),
        )


QualifyingEvent = Union[SaleEvent, RecruitThresholdEvent, PositionChangeEvent]

_EVENT_CLASSES = {
    EventType.SALE.value: SaleEvent,
    EventType.RECRUIT_THRESHOLD.value: RecruitThresholdEvent,
    EventType.POSITION_CHANGE.value: PositionChangeEvent,
}


def event_to_record_fields(event: QualifyingEvent) -> Dict[str, Any]:
    """Column values for a QualifyingEventRecord."""
    return {
        "eventKey": event.eventKey,
        "eventType": event.eventType.value,
        "sourceDistributorID": event.sourceDistributorId,
        "occurredAt": datetime.combine(event.businessDate, time()),
        "payload": event.toPayload(),
    }


def event_from_record(record) -> QualifyingEvent:
    """
    Rebuild the immutable event from an inbox row.

    Raises:
        ValueError: Unknown event type
    """
    eventClass = _EVENT_CLASSES.get(record.eventType)
    if eventClass is None:
        raise ValueError(f"Unknown qualifying event type '{record.eventType}'")
    return eventClass.fromPayload(record.payload)
