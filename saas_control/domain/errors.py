from __future__ import annotations

from typing import Any


class ControlPlaneError(Exception):
    pass


class ValidationError(ControlPlaneError):
    pass


class NotFoundError(ControlPlaneError):
    pass


class ConflictError(ControlPlaneError):
    pass


class QuotaExceededError(ControlPlaneError):
    def __init__(self, verdict: Any) -> None:
        super().__init__(f"quota exceeded: {verdict.limit_type}")
        self.verdict = verdict


class TransientExternalError(ControlPlaneError):
    pass


class InvariantViolation(ControlPlaneError):
    pass


class SignatureError(ControlPlaneError):
    pass


class AuthError(ControlPlaneError):
    pass
