# models/qualifying_event.py
"""
Inbox of qualifying events waiting for commission computation.
Rows are immutable once ingested, only the processing columns change.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON
from models.base import Base, _get_current_time


class QualifyingEventRecord(Base):
    """Qualifying event queue."""
    __tablename__ = 'qualifying_events'

    STATUS_PENDING = 'pending'
    STATUS_PROCESSING = 'processing'
    STATUS_PROCESSED = 'processed'
    STATUS_FAILED = 'failed'

    eventID = Column(Integer, primary_key=True, autoincrement=True)

    # Natural key: SALE:<saleId>, CAE:<recruitId>:<YYYY-MM>, RANK:<id>:<rank>:<date>
    eventKey = Column(String, nullable=False, unique=True)
    eventType = Column(String(32), nullable=False)  # sale, recruit_threshold, position_change
    sourceDistributorID = Column(Integer, nullable=False, index=True)
    occurredAt = Column(DateTime, nullable=False)
    payload = Column(JSON, nullable=False)

    # Processing state
    status = Column(String(20), default=STATUS_PENDING, index=True)
    attempts = Column(Integer, default=0)
    claimToken = Column(String(64), nullable=True, index=True)
    claimedAt = Column(DateTime, nullable=True)
    processedAt = Column(DateTime, nullable=True)
    lastError = Column(String, nullable=True)

    createdAt = Column(DateTime, default=_get_current_time, index=True)

    def __repr__(self):
        return f"<QualifyingEventRecord(eventKey={self.eventKey}, status={self.status})>"
