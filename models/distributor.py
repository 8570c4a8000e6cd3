# models/distributor.py
"""
Distributor model - read-only mirror of the CRM vendor table.
The engine never writes distributor rows; it snapshots them once per run.
Promotion history is mirrored from the CRM and appended by processed
position change events.
"""
from sqlalchemy import Column, Integer, String, Date, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class Distributor(Base, AuditMixin):
    __tablename__ = 'distributors'

    # Primary key
    distributorID = Column(Integer, primary_key=True, autoincrement=True)

    # Upline (single sponsor, nullable for roots). No FK constraint:
    # the CRM can delete a sponsor row, the node then becomes a standalone root.
    sponsorID = Column(Integer, nullable=True, index=True)

    # Denormalized names for reports
    firstname = Column(String, nullable=True)
    surname = Column(String, nullable=True)

    # MLM position
    rank = Column(String, nullable=False, default="Conseiller")  # Conseiller, ETT, ETL, Manager, RC, RD, RVP, SVP
    joinDate = Column(Date, nullable=False)
    isActive = Column(Boolean, default=True)  # soft-deactivation only

    # Points
    monthlyPoints = Column(Integer, default=0)  # reset monthly by the CRM
    cumulativeQualifiedMonths = Column(Integer, default=0)

    # Relationships
    promotions = relationship(
        'RankPromotion',
        back_populates='distributor',
        order_by='RankPromotion.effectiveDate'
    )

    def __repr__(self):
        return f"<Distributor(distributorID={self.distributorID}, rank={self.rank}, sponsor={self.sponsorID})>"


class RankPromotion(Base):
    """Rank-promotion history. notes holds the event key for rows the engine appended."""
    __tablename__ = 'rank_promotions'

    promotionID = Column(Integer, primary_key=True, autoincrement=True)

    # Relations
    distributorID = Column(Integer, ForeignKey('distributors.distributorID'), nullable=False, index=True)

    # Rank details
    previousRank = Column(String, nullable=True)
    newRank = Column(String, nullable=False)
    effectiveDate = Column(Date, nullable=False)

    # Additional context
    notes = Column(String, nullable=True)

    # Relationships
    distributor = relationship('Distributor', back_populates='promotions')

    def __repr__(self):
        return f"<RankPromotion(distributor={self.distributorID}, rank={self.newRank}, date={self.effectiveDate})>"
