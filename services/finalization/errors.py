"""Typed errors raised by the finalization workflow.

Every error carries a machine-readable ``code`` class attribute so callers
(and the HTTP layer) can branch on the type instead of parsing messages.

    FinalizationError
    |
    +-- LookupFailure            supplier / inventory fetch failed
    +-- SupplierWriteFailure     create / update supplier failed
    |   +-- DuplicateSupplierName
    +-- PersistFailure           final commit failed
    +-- ValidationGap            rejected before any I/O
    +-- OperationInProgress      re-entrant save / supplier write / start
    +-- InvalidFlowTransition    entry point called in the wrong state
    +-- TransientStoreError      retryable collaborator failure
"""


class FinalizationError(Exception):
    """Base exception for all finalization errors."""

    code: str = "FINALIZATION_ERROR"


class LookupFailure(FinalizationError):
    """A required collaborator lookup failed irrecoverably."""

    code: str = "LOOKUP_FAILURE"

    def __init__(self, resource: str, reason: str):
        self.resource = resource
        self.reason = reason
        super().__init__(f"Failed to fetch {resource}: {reason}")


class SupplierWriteFailure(FinalizationError):
    """Creating or updating a supplier record failed."""

    code: str = "SUPPLIER_WRITE_FAILURE"

    def __init__(self, supplier_name: str, reason: str):
        self.supplier_name = supplier_name
        self.reason = reason
        super().__init__(f"Failed to save supplier '{supplier_name}': {reason}")


class DuplicateSupplierName(SupplierWriteFailure):
    """The supplier store already holds a supplier with this name."""

    code: str = "DUPLICATE_SUPPLIER_NAME"

    def __init__(self, supplier_name: str):
        super().__init__(supplier_name, "a supplier with this name already exists")


class PersistFailure(FinalizationError):
    """The final document commit failed; nothing was changed."""

    code: str = "PERSIST_FAILURE"

    def __init__(self, reason: str, source_artifact_id: str | None = None):
        self.reason = reason
        self.source_artifact_id = source_artifact_id
        super().__init__(f"Failed to save document: {reason}")


class ValidationGap(FinalizationError):
    """The draft is not in a state that allows the requested operation."""

    code: str = "VALIDATION_GAP"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class OperationInProgress(FinalizationError):
    """An operation of the same kind is still outstanding."""

    code: str = "OPERATION_IN_PROGRESS"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Operation already in progress: {operation}")


class InvalidFlowTransition(FinalizationError):
    """A flow entry point was called in a state that does not accept it."""

    code: str = "INVALID_FLOW_TRANSITION"

    def __init__(self, action: str, state: str):
        self.action = action
        self.state = state
        super().__init__(f"Cannot {action} while flow is in state '{state}'")


class TransientStoreError(FinalizationError):
    """Raised by collaborators for failures worth retrying."""

    code: str = "TRANSIENT_STORE_ERROR"
