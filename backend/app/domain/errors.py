from __future__ import annotations

from typing import Optional


class EngineError(ValueError):
    """Base for expected reconciliation outcomes surfaced to callers."""


class NotFound(EngineError):
    def __init__(self, entity: str, entity_id: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class InvalidState(EngineError):
    """Raised when a transition loses against a record that already left its source state."""

    def __init__(self, entity: str, entity_id: str, current_status: str, message: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        self.current_status = current_status
        super().__init__(message or f"{entity} already handled (status={current_status})")


class ApprovalExpired(InvalidState):
    def __init__(self, approval_id: str):
        super().__init__("approval", approval_id, "expired", "this approval has expired")


class ValidationFailure(EngineError):
    pass


class TransientDependencyFailure(RuntimeError):
    """Outbound collaborator failed in a way the next sweep may retry."""
