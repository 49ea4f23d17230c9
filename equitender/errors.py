"""
equitender/errors.py

Lifecycle error taxonomy.

Every rejected transition raises one of these. The kind distinguishes
"you are not allowed" (unauthorized) from "this is not possible right now"
(invalid_transition / window_violation) from "this would break a uniqueness
or ownership rule" (invariant_violation).

IMPORTANT:
- All errors except ExternalDependencyFailure abort the transition. The
  transaction is rolled back before the error leaves the service layer.
- ExternalDependencyFailure is raised by notification/email adapters and is
  swallowed (and logged) at the fanout boundary.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class LifecycleError(Exception):
    """Base class for structured, caller-visible failures."""

    kind = "error"
    code = "error"
    http_status = 400

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind, "code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(LifecycleError):
    """Malformed input (missing title, non-positive price, bad date...)."""

    kind = "validation"
    code = "invalid_input"
    http_status = 400


class Unauthorized(LifecycleError):
    kind = "unauthorized"
    code = "unauthorized"
    http_status = 403


class NotFound(LifecycleError):
    """Entity missing, or the caller has no visibility on it."""

    kind = "not_found"
    code = "not_found"
    http_status = 404


class InvalidTransition(LifecycleError):
    kind = "invalid_transition"
    code = "invalid_transition"
    http_status = 409


class InvariantViolation(LifecycleError):
    kind = "invariant_violation"
    code = "invariant_violation"
    http_status = 409


class DuplicateActiveOffer(InvariantViolation):
    code = "duplicate_active_offer"


class SelfBidProhibited(InvariantViolation):
    code = "self_bid_prohibited"


class WindowViolation(LifecycleError):
    kind = "window_violation"
    code = "window_violation"
    http_status = 422


class DeadlinePassed(WindowViolation):
    code = "deadline_passed"


class DeadlineNotReached(WindowViolation):
    code = "deadline_not_reached"


class ExternalDependencyFailure(LifecycleError):
    """Notification / email dispatch failed. Never surfaced to the caller."""

    kind = "external_dependency"
    code = "external_dependency_failure"
    http_status = 502
