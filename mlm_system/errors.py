# mlm_system/errors.py
"""
Commission engine error taxonomy.

Only IntegrityError aborts work (the affected partition batch of a run).
The other errors describe business conditions; services catch them and turn
them into result entries or review-queue rows.
"""


class EngineError(Exception):
    """Base class for commission engine errors."""
    pass


class IntegrityError(EngineError):
    """Network data violates a structural invariant (sponsor cycle)."""

    def __init__(self, message: str, nodeId=None):
        super().__init__(message)
        self.nodeId = nodeId


class RuleNotFoundError(EngineError):
    """No rule table entry covers the requested key at the given date."""

    def __init__(self, commissionType: str, position: str, generation: int, effectiveDate):
        super().__init__(
            f"No {commissionType} rule for position={position} generation={generation} "
            f"on {effectiveDate}"
        )
        self.commissionType = commissionType
        self.position = position
        self.generation = generation
        self.effectiveDate = effectiveDate


class DuplicateEventError(EngineError):
    """Qualifying event with the same natural key was already ingested."""

    def __init__(self, eventKey: str):
        super().__init__(f"Event {eventKey} already ingested")
        self.eventKey = eventKey


class SchedulingConflictError(EngineError):
    """Existing obligation disagrees with the freshly computed one."""

    def __init__(self, lineItemId: int, existing: str, computed: str):
        super().__init__(
            f"Obligation for line item {lineItemId} already scheduled as {existing}, "
            f"recomputed as {computed}"
        )
        self.lineItemId = lineItemId
        self.existing = existing
        self.computed = computed


class LedgerMutationError(EngineError):
    """Attempt to rewrite an append-only ledger row."""
    pass
