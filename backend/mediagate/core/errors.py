"""
MediaGate error taxonomy.

Classification drives the retry policy and the fail-closed rules:
  - TransientError (and AnalysisTransientError) plus timeouts are the only
    failures the retry policy repeats
  - PolicyRejection is a verdict, never retried
  - ConcurrencyConflict means another worker won a conditional write; it is
    swallowed by the orchestration layer and never surfaced to callers
"""
from __future__ import annotations

from typing import List, Optional


class PipelineError(Exception):
    """Base class for every pipeline failure."""


class StagingValidationError(PipelineError):
    """Upload metadata or blob refused before any external call."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class DurableUploadError(PipelineError):
    """Durable store write did not complete."""


class VerificationFailure(DurableUploadError):
    """Upload reported success but the object is missing or truncated."""


class TransientError(PipelineError):
    """Network / timeout / service-unavailable — eligible for retry."""


class AnalysisTransientError(TransientError):
    """Transient failure talking to an analysis service."""


class AnalysisInconclusive(PipelineError):
    """Retries exhausted without a verdict. Treated as a reject signal."""

    def __init__(self, modality: str, detail: str):
        self.modality = modality
        self.detail = detail
        super().__init__(f"{modality}: {detail}")


class PolicyRejection(PipelineError):
    """A modality explicitly found a violation."""

    def __init__(self, modality: str, reason: str):
        self.modality = modality
        self.reason = reason
        super().__init__(f"{modality}: {reason}")


class PublishError(PipelineError):
    """Delivery network failure after approval. Retried by the sweeper."""


class ConcurrencyConflict(PipelineError):
    """Lost a conditional-update race."""


class ContentNotFound(PipelineError):
    def __init__(self, content_id):
        self.content_id = content_id
        super().__init__(f"Content not found: {content_id}")


class InvalidTransition(PipelineError):
    def __init__(self, current: str, target: str, detail: Optional[str] = None):
        self.current = current
        self.target = target
        message = f"Transition {current} -> {target} not allowed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class OverrideNotAllowed(PipelineError):
    """Human override refused because the invariant chain would break."""
