"""
Workflow exception hierarchy.

Only invariant violations are raised: approving a job that is not verified,
re-running a job that is in progress or approved, rejecting without feedback,
failed sign-off credentials. Preflight failures, hard-check failures and
external lookup failures are reported as blocking issues instead.

Every exception carries:
- code:    machine-readable identifier (JOB_NOT_VERIFIED / PIPELINE_ALREADY_RUNNING / ...)
- message: human-readable description
- detail:  optional extra payload (dict / list / None)
"""


class CompoundGuardError(Exception):
    """Base class for all workflow errors."""

    code = "WORKFLOW_ERROR"

    def __init__(self, message, code=None, detail=None):
        self.message = message
        if code is not None:
            self.code = code
        self.detail = detail
        super().__init__(message)


class NotFoundError(CompoundGuardError):
    """A job, report or formula the operation needs does not exist."""

    code = "NOT_FOUND"


class JobStateError(CompoundGuardError):
    """The job is in a status that does not allow the requested transition."""

    code = "INVALID_JOB_STATE"


class ApprovalError(CompoundGuardError):
    """Approval or rejection preconditions were not met."""

    code = "APPROVAL_REJECTED"


class SigningError(CompoundGuardError):
    """
    The signing intent / PIN pair was refused by the credential store.

    `reason` is one of: pin_not_set, locked, intent_expired,
    intent_already_used, challenge_mismatch, job_not_verified.
    """

    code = "SIGNING_FAILED"

    def __init__(self, message, reason=None, detail=None):
        self.reason = reason
        super().__init__(message, code=None, detail=detail)


class InventoryError(CompoundGuardError):
    """Atomic inventory consumption could not cover the job's requirements."""

    code = "INVENTORY_SHORTAGE"
