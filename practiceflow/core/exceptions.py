"""
Custom Exceptions for PracticeFlow

This module defines custom exception types for error classification and retry logic.

Exception Hierarchy:
- PracticeFlowException (base)
  - WorkflowError
    - GraphValidationError (don't retry)
    - GraphExecutionError (retry)
  - EnrollmentError
    - InvalidTransitionError (don't retry)
  - DataIntegrityError (don't retry)
    - WorkflowNotFoundError
    - EnrollmentNotFoundError
    - ClientNotFoundError
    - AppendOnlyViolationError
  - ActionProviderError (retry)
    - MessageDeliveryError
    - TagServiceError
  - ConfigError (don't retry)
"""


class PracticeFlowException(Exception):
    """Base exception for all PracticeFlow errors"""

    def __init__(self, message: str, retry_allowed: bool = True):
        super().__init__(message)
        self.message = message
        self.retry_allowed = retry_allowed


# ============================================================================
# WORKFLOW ERRORS
# ============================================================================

class WorkflowError(PracticeFlowException):
    """Base class for workflow-definition errors"""
    pass


class GraphValidationError(WorkflowError):
    """
    Workflow graph is invalid (cycles, dangling connections, duplicate block ids,
    bad branch ports, invalid block config).
    Should NOT be retried - fix the workflow definition.
    """

    def __init__(self, message: str, block_id: str = None):
        super().__init__(message, retry_allowed=False)
        self.block_id = block_id


class GraphExecutionError(WorkflowError):
    """
    Walking the graph failed for a reason other than a provider error.
    Should be retried.
    """

    def __init__(self, message: str):
        super().__init__(message, retry_allowed=True)


# ============================================================================
# ENROLLMENT ERRORS
# ============================================================================

class EnrollmentError(PracticeFlowException):
    """Base class for enrollment lifecycle errors"""
    pass


class InvalidTransitionError(EnrollmentError):
    """
    Requested status change is not allowed by the enrollment state machine
    (e.g. resuming a completed enrollment).
    """

    def __init__(self, message: str, from_status: str = None, to_status: str = None):
        super().__init__(message, retry_allowed=False)
        self.from_status = from_status
        self.to_status = to_status


# ============================================================================
# DATA INTEGRITY ERRORS
# ============================================================================

class DataIntegrityError(PracticeFlowException):
    """
    A record the engine depends on is missing.
    Surfaced to the caller, never retried.
    """

    def __init__(self, message: str, record_id=None):
        super().__init__(message, retry_allowed=False)
        self.record_id = record_id


class WorkflowNotFoundError(DataIntegrityError):
    """Workflow record is missing"""
    pass


class EnrollmentNotFoundError(DataIntegrityError):
    """Enrollment record is missing"""
    pass


class ClientNotFoundError(DataIntegrityError):
    """Client record is missing"""
    pass


class AppendOnlyViolationError(DataIntegrityError):
    """Something tried to update or delete a stored execution log row"""
    pass


# ============================================================================
# ACTION PROVIDER ERRORS
# ============================================================================

class ActionProviderError(PracticeFlowException):
    """
    An external side-effect provider (messaging, tagging) failed.
    The step stays where it is and may be retried.
    """

    def __init__(self, message: str, provider: str = None):
        super().__init__(message, retry_allowed=True)
        self.provider = provider


class MessageDeliveryError(ActionProviderError):
    """SMS or email could not be handed to the messaging provider"""

    def __init__(self, message: str, kind: str = None, recipient: str = None):
        super().__init__(message, provider="messaging")
        self.kind = kind
        self.recipient = recipient


class TagServiceError(ActionProviderError):
    """Tag could not be added to or removed from a client"""

    def __init__(self, message: str, tag: str = None):
        super().__init__(message, provider="tags")
        self.tag = tag


# ============================================================================
# CONFIGURATION ERRORS
# ============================================================================

class ConfigError(PracticeFlowException):
    """
    Engine configuration is invalid (unknown provider, missing URL).
    Should NOT be retried - fix the environment.
    """

    def __init__(self, message: str, setting: str = None):
        super().__init__(message, retry_allowed=False)
        self.setting = setting
