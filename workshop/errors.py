"""Failure taxonomy for the workshop store.

Every repository, clone and backup operation either returns its entity or
raises one of these. Missing asset references inside an otherwise valid
graph are not errors; see ``services.integrity``.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .schemas import QuotaCleanupState


class WorkshopError(Exception):
    """Base class for all store failures."""


class NotFoundError(WorkshopError):
    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class ValidationFailure(WorkshopError):
    """Caller input rejected before any write."""


class QuotaExceededError(WorkshopError):
    """The store refused a write for lack of capacity.

    Carries a ``QuotaCleanupState`` so callers can branch into cleanup
    tooling instead of retrying.
    """

    def __init__(self, state: "QuotaCleanupState") -> None:
        super().__init__(state.reason)
        self.state = state


class InvalidArchiveError(WorkshopError):
    """Backup archive is unreadable or has no usable manifest."""


class IntegrityFailure(WorkshopError):
    """An asset id could not be remapped during a strict clone or import."""
