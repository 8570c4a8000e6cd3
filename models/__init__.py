"""
Database models for the commission engine.
Import all models here for easy access.
"""

# Base and mixins
from models.base import Base, AuditMixin

# Network (read-only CRM mirror)
from models.distributor import Distributor, RankPromotion

# Engine inbox and ledger
from models.qualifying_event import QualifyingEventRecord
from models.commission import CommissionLineItem, UnresolvedCommission
from models.payment import PaymentObligation

# Event listeners
from models.listeners import register_all_listeners

__all__ = [
    # Base
    'Base',
    'AuditMixin',

    # Network
    'Distributor',
    'RankPromotion',

    # Engine
    'QualifyingEventRecord',
    'CommissionLineItem',
    'UnresolvedCommission',
    'PaymentObligation',

    # Listeners
    'register_all_listeners',
]
