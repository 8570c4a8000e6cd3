# models/commission.py
"""
Commission ledger models - line items and the operator review queue.
Both are written exclusively by the commission engine.
"""
from sqlalchemy import (
    Column, Integer, String, DECIMAL, Date, DateTime, Text, UniqueConstraint
)
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class CommissionLineItem(Base, AuditMixin):
    """Append-only commission line item, traceable to its qualifying event."""
    __tablename__ = 'commission_line_items'
    __table_args__ = (
        UniqueConstraint(
            'sourceEventKey', 'commissionType', 'beneficiaryID',
            name='uq_line_item_event_type_beneficiary'
        ),
    )

    lineItemID = Column(Integer, primary_key=True, autoincrement=True)

    # Traceability
    sourceEventKey = Column(String, nullable=False, index=True)

    # Beneficiary
    beneficiaryID = Column(Integer, nullable=False, index=True)
    beneficiaryRank = Column(String, nullable=True)
    generation = Column(Integer, nullable=False)  # path distance, 0 = seller

    # Commission details
    commissionType = Column(String(8), nullable=False)  # CVD, CAE, CCA
    amount = Column(DECIMAL(12, 2), nullable=False)
    rate = Column(DECIMAL(12, 4), nullable=True)  # rate or flat amount applied
    ruleVersion = Column(String, nullable=False)
    ruleGeneration = Column(Integer, nullable=True)  # generation index used for the lookup
    referenceDate = Column(Date, nullable=False)  # business date driving the payment calendar
    computedAt = Column(DateTime, nullable=False)

    notes = Column(Text, nullable=True)

    # Relationships
    obligation = relationship('PaymentObligation', back_populates='lineItem', uselist=False)

    def __repr__(self):
        return (
            f"<CommissionLineItem(lineItemID={self.lineItemID}, type={self.commissionType}, "
            f"beneficiary={self.beneficiaryID}, amount={self.amount})>"
        )


class UnresolvedCommission(Base, AuditMixin):
    """Operator review queue for commissions the engine could not settle."""
    __tablename__ = 'unresolved_commissions'

    REASON_RULE_NOT_FOUND = 'rule_not_found'
    REASON_MISSING_PROMOTION_HISTORY = 'missing_promotion_history'
    REASON_BELOW_TRIGGER = 'below_trigger'
    REASON_LINE_ITEM_CONFLICT = 'line_item_conflict'
    REASON_SCHEDULING_CONFLICT = 'scheduling_conflict'
    REASON_INTEGRITY = 'integrity'
    REASON_UNKNOWN_SOURCE = 'unknown_source'
    REASON_PROCESSING_ERROR = 'processing_error'

    unresolvedID = Column(Integer, primary_key=True, autoincrement=True)

    sourceEventKey = Column(String, nullable=False, index=True)
    commissionType = Column(String(8), nullable=True)
    beneficiaryID = Column(Integer, nullable=True, index=True)
    generation = Column(Integer, nullable=True)

    reason = Column(String(40), nullable=False)
    details = Column(Text, nullable=True)

    # Status
    status = Column(String, default="open")  # open, resolved
    resolutionNotes = Column(Text, nullable=True)

    def __repr__(self):
        return (
            f"<UnresolvedCommission(event={self.sourceEventKey}, type={self.commissionType}, "
            f"reason={self.reason}, status={self.status})>"
        )
