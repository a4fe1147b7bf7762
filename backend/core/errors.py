"""Typed failures raised by the scheduling services.

Each error carries a stable ``code`` for API clients and the HTTP status the
routers translate it to. Validation errors are raised before anything is
written; state conflicts are expected under concurrency and are never retried
by the services themselves.
"""

from fastapi import status


class SchedulingError(Exception):
    code = 'scheduling_error'
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = 'Scheduling request failed.'

    def __init__(self, message: str | None = None, reasons: list[str] | None = None) -> None:
        self.message = message or self.default_message
        self.reasons = list(reasons or [])
        super().__init__(self.message)

    def to_detail(self) -> dict:
        detail = {'error': self.code, 'message': self.message}
        if self.reasons:
            detail['reasons'] = self.reasons
        return detail


class InvalidRangeError(SchedulingError):
    code = 'invalid_range'
    default_message = 'Invalid time range.'


class SlotMisalignedError(SchedulingError):
    code = 'slot_misaligned'
    default_message = 'This checkout slot does not line up with the availability schedule.'


class ReasonRequiredError(SchedulingError):
    code = 'reason_required'
    default_message = 'A reason is required.'


class NotFoundError(SchedulingError):
    code = 'not_found'
    status_code = status.HTTP_404_NOT_FOUND
    default_message = 'Not found.'


class ForbiddenError(SchedulingError):
    code = 'forbidden'
    status_code = status.HTTP_403_FORBIDDEN
    default_message = 'You are not allowed to perform this action.'


class TrainingIncompleteError(SchedulingError):
    code = 'training_incomplete'
    status_code = status.HTTP_403_FORBIDDEN
    default_message = 'Training requirements are not complete.'


class NotEligibleError(SchedulingError):
    code = 'not_eligible'
    status_code = status.HTTP_403_FORBIDDEN
    default_message = 'Not eligible to reserve this machine or tool.'


class InactiveResourceError(SchedulingError):
    code = 'inactive_resource'
    status_code = status.HTTP_409_CONFLICT
    default_message = 'This resource is not active.'


class OverlapConflictError(SchedulingError):
    code = 'overlap_conflict'
    status_code = status.HTTP_409_CONFLICT
    default_message = 'This recurring availability overlaps another rule you already set.'


class AlreadyCheckedOutError(SchedulingError):
    code = 'already_checked_out'
    status_code = status.HTTP_409_CONFLICT
    default_message = 'You are already checked out for this machine or tool.'


class ExistingRequestError(SchedulingError):
    code = 'existing_request'
    status_code = status.HTTP_409_CONFLICT
    default_message = 'You already have an upcoming checkout request for this machine or tool.'


class SlotUnavailableError(SchedulingError):
    code = 'slot_unavailable'
    status_code = status.HTTP_409_CONFLICT
    default_message = 'This checkout slot is no longer available.'


class SlotConflictError(SchedulingError):
    code = 'slot_conflict'
    status_code = status.HTTP_409_CONFLICT
    default_message = 'This checkout slot has already been booked.'


class NotPendingError(SchedulingError):
    code = 'not_pending'
    status_code = status.HTTP_409_CONFLICT
    default_message = 'Only pending requests can be moderated.'


class NotAcceptedError(SchedulingError):
    code = 'not_accepted'
    status_code = status.HTTP_409_CONFLICT
    default_message = 'Only accepted appointments can be finalized.'


class NotCancellableError(SchedulingError):
    code = 'not_cancellable'
    status_code = status.HTTP_409_CONFLICT
    default_message = 'This booking can no longer be cancelled.'


class AlreadyStartedError(SchedulingError):
    code = 'already_started'
    status_code = status.HTTP_409_CONFLICT
    default_message = 'Only future bookings can be cancelled.'
