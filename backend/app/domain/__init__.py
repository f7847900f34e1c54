"""Domain contracts, fix actions and error types."""

from backend.app.domain.contracts import (  # noqa: F401
    AlertEventMetadata,
    FixAction,
    InvoiceStateChangedEvent,
    ReceiptCreatedEvent,
    ScopeApprovedEvent,
    VoiceLogCreatedEvent,
)
from backend.app.domain.errors import (  # noqa: F401
    ApprovalExpired,
    EngineError,
    InvalidState,
    NotFound,
    TransientDependencyFailure,
    ValidationFailure,
)
