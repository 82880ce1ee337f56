"""
CaseFlow — Error Taxonomy

Exception Hierarchy:
    CaseFlowError (base)
    ├── CaseNotFound
    ├── InvalidTransition      (also a ValueError)
    │   └── ApprovalBlocked
    ├── AlreadyInReview
    ├── InvalidRegion
    ├── InvalidMaskType
    ├── MissingVendor
    ├── RetryNotAllowed
    ├── RetryExhausted
    ├── ExtractionFailure
    ├── ExportFailure
    ├── ExportInProgress
    └── InvalidQuery

Transition-validity errors are raised synchronously to the caller and never
downgraded to a no-op. ExtractionFailure and ExportFailure are recoverable
(retry / idempotent re-call).
"""


class CaseFlowError(Exception):
    """
    Base exception for all case lifecycle errors.

    Attributes:
        message: Human-readable error message.
        details: Dictionary with additional error context.
    """

    code = "caseflow_error"

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "details": self.details}


class CaseNotFound(CaseFlowError):
    code = "case_not_found"

    def __init__(self, case_id: str):
        super().__init__(f"Case not found: {case_id}", {"caseId": case_id})


class InvalidTransition(CaseFlowError, ValueError):
    """Raised when a state change is not permitted from the current state."""

    code = "invalid_transition"

    def __init__(self, case_id: str, from_state: str, to_state: str, allowed: list = None):
        message = f"Cannot transition case {case_id} from '{from_state}' to '{to_state}'"
        details = {"caseId": case_id, "fromState": from_state, "toState": to_state,
                   "allowed": list(allowed or [])}
        super().__init__(message, details)


class ApprovalBlocked(InvalidTransition):
    """Raised when a reviewer approves while hard validation flags remain unresolved."""

    code = "approval_blocked"

    def __init__(self, case_id: str, from_state: str, blocking_reasons: list):
        super().__init__(case_id, from_state, "approved")
        self.message = f"Case {case_id} cannot be approved: {len(blocking_reasons)} unresolved hard flag(s)"
        self.details["blockingReasons"] = list(blocking_reasons)
        self.args = (self.message,)


class AlreadyInReview(CaseFlowError):
    """Raised when a second reviewer tries to take or act on a held case."""

    code = "already_in_review"

    def __init__(self, case_id: str, held_by: str, requested_by: str = None):
        message = f"Case {case_id} is already in review by {held_by}"
        super().__init__(message, {"caseId": case_id, "heldBy": held_by, "requestedBy": requested_by})


class InvalidRegion(CaseFlowError):
    code = "invalid_region"

    def __init__(self, reason: str, region=None):
        super().__init__(f"Invalid mask region: {reason}", {"reason": reason, "region": region})


class InvalidMaskType(CaseFlowError):
    code = "invalid_mask_type"

    def __init__(self, mask_type, supported: list):
        super().__init__(f"Unsupported mask type: '{mask_type}'",
                         {"type": mask_type, "supported": list(supported)})


class MissingVendor(CaseFlowError):
    """Raised for a vendor-specific mask on a case that has no vendor."""

    code = "missing_vendor"

    def __init__(self, case_id: str):
        super().__init__(f"Case {case_id} has no vendor, so a vendor-specific mask cannot be stored",
                         {"caseId": case_id})


class RetryNotAllowed(CaseFlowError):
    """Raised when a retry is requested for a case that is not failed, or already retrying."""

    code = "retry_not_allowed"

    def __init__(self, case_id: str, state: str, outstanding_retry: bool):
        if outstanding_retry:
            reason = "a retry is already outstanding"
        else:
            reason = f"case is '{state}', not 'failed'"
        super().__init__(f"Retry not allowed for case {case_id}: {reason}",
                         {"caseId": case_id, "state": state, "outstandingRetry": outstanding_retry})


class RetryExhausted(CaseFlowError):
    """Raised when the retry cap is reached. The case stays failed and needs manual handling."""

    code = "retry_exhausted"

    def __init__(self, case_id: str, retry_count: int, max_retries: int):
        super().__init__(f"Retries exhausted for case {case_id} ({retry_count}/{max_retries})",
                         {"caseId": case_id, "retryCount": retry_count, "maxRetries": max_retries})


class ExtractionFailure(CaseFlowError):
    code = "extraction_failure"

    def __init__(self, reason: str, details: dict = None):
        super().__init__(f"Extraction failed: {reason}", {"reason": reason, **(details or {})})


class ExportFailure(CaseFlowError):
    code = "export_failure"

    def __init__(self, case_id: str, reason: str):
        super().__init__(f"Export failed for case {case_id}: {reason}",
                         {"caseId": case_id, "reason": reason})


class ExportInProgress(CaseFlowError):
    code = "export_in_progress"

    def __init__(self, case_id: str):
        super().__init__(f"Export already in progress for case {case_id}", {"caseId": case_id})


class InvalidQuery(CaseFlowError):
    code = "invalid_query"

    def __init__(self, parameter: str, value, reason: str):
        super().__init__(f"Invalid queue query parameter '{parameter}': {reason}",
                         {"parameter": parameter, "value": value})


__all__ = [
    'CaseFlowError',
    'CaseNotFound',
    'InvalidTransition',
    'ApprovalBlocked',
    'AlreadyInReview',
    'InvalidRegion',
    'InvalidMaskType',
    'MissingVendor',
    'RetryNotAllowed',
    'RetryExhausted',
    'ExtractionFailure',
    'ExportFailure',
    'ExportInProgress',
    'InvalidQuery',
]
