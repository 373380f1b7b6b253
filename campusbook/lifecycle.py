"""Booking lifecycle: statuses, per-status data and guarded transitions.

    pending --approve--> approved --cancel--> cancelled
    pending --reject---> rejected
    pending --cancel---> cancelled

``rejected`` and ``cancelled`` are terminal. The flat status columns on
:class:`~campusbook.models.Reservation` are read and written only through
:func:`state_of` and :func:`apply_state`, so a record never carries approval
data without being approved or a rejection without remarks.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from campusbook.errors import InvalidTransitionError, ValidationError


class BookingStatus(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    CANCELLED = 'cancelled'


TERMINAL = frozenset({BookingStatus.REJECTED, BookingStatus.CANCELLED})


@dataclass(frozen=True)
class Pending:
    status = BookingStatus.PENDING


@dataclass(frozen=True)
class Approved:
    approved_at: datetime
    approved_by: int
    status = BookingStatus.APPROVED


@dataclass(frozen=True)
class Rejected:
    remarks: str
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[int] = None
    status = BookingStatus.REJECTED


@dataclass(frozen=True)
class Cancelled:
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[int] = None
    status = BookingStatus.CANCELLED


State = Union[Pending, Approved, Rejected, Cancelled]


def initial_state(actor, now, auto_approve_roles) -> State:
    """New bookings wait for approval unless the creator's role auto-approves."""
    if actor.role.value in auto_approve_roles:
        return Approved(approved_at=now, approved_by=actor.id)
    return Pending()


def transition(current, target, actor, now, remarks=None) -> State:
    current = BookingStatus(current)
    target = BookingStatus(target)
    if current in TERMINAL:
        raise InvalidTransitionError(f'Booking is already {current.value}')
    if current == target:
        raise InvalidTransitionError(f'Booking is already {current.value}')
    if target is BookingStatus.PENDING:
        raise InvalidTransitionError(f'Cannot move a booking from {current.value} back to pending')

    if target is BookingStatus.APPROVED:
        if current is not BookingStatus.PENDING:
            raise InvalidTransitionError(f'Cannot approve a booking that is {current.value}')
        return Approved(approved_at=now, approved_by=actor.id)
    if target is BookingStatus.REJECTED:
        if current is not BookingStatus.PENDING:
            raise InvalidTransitionError(f'Cannot reject a booking that is {current.value}')
        if not remarks or not remarks.strip():
            raise ValidationError('Admin remarks are required when rejecting a booking',
                                  errors={'adminRemarks': 'Required when rejecting'})
        return Rejected(remarks=remarks.strip(), rejected_at=now, rejected_by=actor.id)
    # pending or approved -> cancelled
    return Cancelled(cancelled_at=now, cancelled_by=actor.id)


def state_of(record) -> State:
    status = BookingStatus(record.status)
    if status is BookingStatus.APPROVED:
        return Approved(approved_at=record.approved_at, approved_by=record.approved_by_id)
    if status is BookingStatus.REJECTED:
        return Rejected(remarks=record.admin_remarks or '')
    if status is BookingStatus.CANCELLED:
        return Cancelled()
    return Pending()


def apply_state(record, state: State):
    record.status = state.status.value
    if isinstance(state, Approved):
        record.approved_at = state.approved_at
        record.approved_by_id = state.approved_by
    elif isinstance(state, Rejected):
        record.admin_remarks = state.remarks
