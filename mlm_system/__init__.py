"""
MLM System - network commission engine.
"""

# Services
from mlm_system.services.commission_service import CommissionCalculator, CommissionResult
from mlm_system.services.payment_scheduler import PaymentScheduler, PaymentScheduleService
from mlm_system.services.payment_report_service import PaymentReportService
from mlm_system.services.event_ingestion_service import EventIngestionService

# Models and configuration
from mlm_system.config.ranks import Rank, CommissionType
from mlm_system.config.rule_tables import RuleTableProvider, load_rule_tables
from mlm_system.network.snapshot import NetworkSnapshot, DistributorNode

# Utilities
from mlm_system.utils.time_machine import timeMachine

# Events
from mlm_system.events.event_bus import eventBus, MLMEvents

__all__ = [
    # Services
    'CommissionCalculator',
    'CommissionResult',
    'PaymentScheduler',
    'PaymentScheduleService',
    'PaymentReportService',
    'EventIngestionService',

    # Config
    'Rank',
    'CommissionType',
    'RuleTableProvider',
    'load_rule_tables',

    # Network
    'NetworkSnapshot',
    'DistributorNode',

    # Utils
    'timeMachine',

    # Events
    'eventBus',
    'MLMEvents',
]
