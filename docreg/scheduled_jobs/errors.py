"""Error taxonomy for the scheduled job manager.

- ValidationError: malformed input, rejected before any state change.
- NotFoundError: unknown job or customer id, no state change.
- InvalidStateError: illegal transition for the job's current status, no state change.
- ExternalCollaboratorError: report generation or delivery failed; the partial
  state change is recorded on the job.
"""

from __future__ import annotations


class ScheduledJobError(Exception):
    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ScheduledJobError):
    code = "validation_error"


class NotFoundError(ScheduledJobError):
    code = "not_found"


class InvalidStateError(ScheduledJobError):
    code = "invalid_state"


class ExternalCollaboratorError(ScheduledJobError):
    code = "external_error"
