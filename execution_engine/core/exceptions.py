"""
Custom Exceptions for the Execution Engine

This module defines custom exception types for error handling and retry logic.

Exception Hierarchy:
- EngineException (base)
  - GenerationProviderError
    - CapabilityNotImplementedError (don't retry)
    - ProviderUnavailableError (retry)
    - GenerationError (retry)
      - SchemaViolationError (retry)
  - RunnerError
    - TimeoutExceededError (counts as one attempt)
    - RetriesExhaustedError (terminal)
  - ExecutionRecordError (don't retry)
    - InvalidTransitionError (don't retry)
  - CollaboratorError
    - TransferError (retry)
    - CompletionError (retry)
  - PersistenceError (never recorded on the execution)
    - StaleClaimError
"""

from typing import Optional


class EngineException(Exception):
    """Base exception for all engine errors"""

    def __init__(self, message: str, retry_allowed: bool = True):
        super().__init__(message)
        self.message = message
        self.retry_allowed = retry_allowed


# ============================================================================
# GENERATION PROVIDER ERRORS
# ============================================================================

class GenerationProviderError(EngineException):
    """Base class for generation backend errors"""

    def __init__(self, message: str, provider: Optional[str] = None, retry_allowed: bool = True):
        super().__init__(message, retry_allowed=retry_allowed)
        self.provider = provider


class CapabilityNotImplementedError(GenerationProviderError):
    """
    The backend does not implement the requested capability.
    Configuration error - should NOT be retried.
    """

    def __init__(self, capability: str, provider: Optional[str] = None):
        super().__init__(
            f"{provider or 'Provider'} does not implement {capability}()",
            provider=provider,
            retry_allowed=False,
        )
        self.capability = capability


class ProviderUnavailableError(GenerationProviderError):
    """
    Backend cannot serve requests right now (missing key, outage, rate limit).
    Should be retried.
    """

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message, provider=provider, retry_allowed=True)


class GenerationError(GenerationProviderError):
    """
    Backend responded with an error or with unusable content.
    Should be retried up to the configured limit.
    """

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message, provider=provider, retry_allowed=True)


class SchemaViolationError(GenerationError):
    """
    Backend output could not be parsed or validated against the schema.
    Should be retried up to the configured limit.
    """

    def __init__(self, message: str, provider: Optional[str] = None, schema_name: Optional[str] = None):
        super().__init__(message, provider=provider)
        self.schema_name = schema_name


# ============================================================================
# RUNNER ERRORS
# ============================================================================

class RunnerError(EngineException):
    """Base class for errors raised by the timeout/retry runner"""
    pass


class TimeoutExceededError(RunnerError):
    """
    A single attempt did not finish before its deadline.
    Counted as one failed attempt by run_with_retry().
    """

    def __init__(self, label: str, timeout_seconds: float):
        super().__init__(
            f"Timeout of {timeout_seconds}s exceeded for {label}",
            retry_allowed=True,
        )
        self.label = label
        self.timeout_seconds = timeout_seconds


class RetriesExhaustedError(RunnerError):
    """
    Every attempt failed. Terminal - wraps the last underlying error.
    """

    def __init__(self, attempts: int, last_error: BaseException, label: Optional[str] = None):
        what = f" for {label}" if label else ""
        super().__init__(
            f"All {attempts} attempt(s) failed{what}: {describe_error(last_error)}",
            retry_allowed=False,
        )
        self.attempts = attempts
        self.last_error = last_error
        self.label = label


# ============================================================================
# EXECUTION RECORD ERRORS
# ============================================================================

class ExecutionRecordError(EngineException):
    """
    Execution record fields are inconsistent (e.g., installment out of range).
    Should NOT be retried - fix the scheduling input.
    """

    def __init__(self, message: str, execution_id: Optional[int] = None):
        super().__init__(message, retry_allowed=False)
        self.execution_id = execution_id


class InvalidTransitionError(ExecutionRecordError):
    """Attempted to move a record out of a terminal state."""

    def __init__(self, execution_id: Optional[int], current: str, target: str):
        super().__init__(
            f"Execution {execution_id} cannot transition {current} -> {target}",
            execution_id=execution_id,
        )
        self.current = current
        self.target = target


# ============================================================================
# COLLABORATOR ERRORS
# ============================================================================

class CollaboratorError(EngineException):
    """Base class for funds-transfer, effect-application and completion failures"""

    def __init__(self, message: str, project_id: Optional[int] = None, retry_allowed: bool = True):
        super().__init__(message, retry_allowed=retry_allowed)
        self.project_id = project_id


class TransferError(CollaboratorError):
    """Funds transfer for an installment failed."""
    pass


class CompletionError(CollaboratorError):
    """Project completion bookkeeping failed."""
    pass


class EffectApplicationError(CollaboratorError):
    """Generated effects could not be applied to the state."""
    pass


# ============================================================================
# PERSISTENCE ERRORS
# ============================================================================

class PersistenceError(EngineException):
    """
    Execution store read/write error.
    Never written into error_message - the record stays pending.
    """

    def __init__(self, message: str, execution_id: Optional[int] = None):
        super().__init__(message, retry_allowed=True)
        self.execution_id = execution_id


class StaleClaimError(PersistenceError):
    """
    The record is no longer held by this claim (lease expired and another
    worker took it, or it already reached a terminal state).
    """
    pass


def describe_error(error: BaseException, limit: int = 500) -> str:
    """
    One-line, non-sensitive summary of an error for error_message.

    Unwraps RetriesExhaustedError so the stored message names the real cause.
    """
    if isinstance(error, RetriesExhaustedError):
        error = error.last_error
    message = getattr(error, "message", None) or str(error) or "no details"
    summary = f"{type(error).__name__}: {' '.join(message.split())}"
    if len(summary) > limit:
        summary = summary[: limit - 3] + "..."
    return summary
