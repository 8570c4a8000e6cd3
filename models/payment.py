# models/payment.py
"""
PaymentObligation model - dated payouts derived from commission line items.
Payroll marks obligations paid; the engine only schedules them.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, Date, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class PaymentObligation(Base, AuditMixin):
    __tablename__ = 'payment_obligations'

    STATUS_SCHEDULED = 'scheduled'
    STATUS_PAID = 'paid'
    STATUS_CANCELLED = 'cancelled'

    # Primary key
    obligationID = Column(Integer, primary_key=True, autoincrement=True)

    # Relations (1:1 with the line item)
    lineItemID = Column(
        Integer,
        ForeignKey('commission_line_items.lineItemID'),
        nullable=False,
        unique=True
    )

    # Denormalized for payroll reports
    beneficiaryID = Column(Integer, nullable=False, index=True)
    commissionType = Column(String(8), nullable=False)

    amount = Column(DECIMAL(12, 2), nullable=False)
    dueDate = Column(Date, nullable=False, index=True)

    status = Column(String, default=STATUS_SCHEDULED, index=True)  # scheduled, paid, cancelled

    # Set by payroll / operators
    paidAt = Column(DateTime, nullable=True)
    notes = Column(String, nullable=True)

    # Note: createdAt, updatedAt - from AuditMixin

    # Relationships
    lineItem = relationship('CommissionLineItem', back_populates='obligation')

    def __repr__(self):
        return (
            f"<PaymentObligation(obligationID={self.obligationID}, beneficiary={self.beneficiaryID}, "
            f"amount={self.amount}, dueDate={self.dueDate}, status={self.status})>"
        )
