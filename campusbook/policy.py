"""Who may do what to a booking.

The rules form a table indexed by the actor's relationship to the booking
and the requested action; each cell lists the booking statuses in which the
action is allowed. Relationships are tried in order (admin, owner,
same-department teacher, anyone else) and the first match decides.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from campusbook.lifecycle import BookingStatus


class Role(str, Enum):
    ADMIN = 'admin'
    TEACHER = 'teacher'
    STUDENT = 'student'

    @classmethod
    def parse(cls, value):
        value = (value or '').strip().lower()
        # legacy role name used by older portal accounts
        if value == 'faculty':
            value = 'teacher'
        return cls(value)


class Action(str, Enum):
    VIEW = 'view'
    CREATE = 'create'
    UPDATE_SCHEDULE = 'update_schedule'
    CANCEL = 'cancel'
    APPROVE = 'approve'
    REJECT = 'reject'
    DELETE = 'delete'


class Relationship(str, Enum):
    ADMIN = 'admin'
    OWNER = 'owner'
    SAME_DEPARTMENT = 'same_department'
    OTHER = 'other'


@dataclass(frozen=True)
class Actor:
    id: int
    role: Role
    department_id: Optional[int] = None
    username: Optional[str] = None

    @property
    def is_admin(self):
        return self.role is Role.ADMIN


ANY = frozenset(BookingStatus)
NONE = frozenset()
PENDING_ONLY = frozenset({BookingStatus.PENDING})
OPEN = frozenset({BookingStatus.PENDING, BookingStatus.APPROVED})
APPROVED_ONLY = frozenset({BookingStatus.APPROVED})

RULES = {
    Relationship.ADMIN: {action: ANY for action in Action},
    Relationship.OWNER: {
        Action.VIEW: ANY,
        Action.CREATE: ANY,
        Action.UPDATE_SCHEDULE: PENDING_ONLY,
        Action.CANCEL: ANY,
        Action.DELETE: PENDING_ONLY,
    },
    Relationship.SAME_DEPARTMENT: {
        Action.VIEW: OPEN,
        Action.CREATE: ANY,
    },
    Relationship.OTHER: {
        Action.VIEW: APPROVED_ONLY,
        Action.CREATE: ANY,
    },
}


def relationship_of(actor: Actor, booking) -> Relationship:
    if actor.is_admin:
        return Relationship.ADMIN
    if booking.requester_id == actor.id:
        return Relationship.OWNER
    if (actor.role is Role.TEACHER and actor.department_id is not None
            and booking.requester_department_id == actor.department_id):
        return Relationship.SAME_DEPARTMENT
    return Relationship.OTHER


def can_perform(actor: Actor, action: Action, booking=None) -> bool:
    if action is Action.CREATE:
        # any authenticated actor may request a booking
        return True
    if booking is None:
        return actor.is_admin
    allowed = RULES[relationship_of(actor, booking)].get(action, NONE)
    return BookingStatus(booking.status) in allowed


STATUS_ACTIONS = {
    BookingStatus.APPROVED: Action.APPROVE,
    BookingStatus.REJECTED: Action.REJECT,
    BookingStatus.CANCELLED: Action.CANCEL,
}

# fields that ride along with a status change without making it an edit
_STATUS_FIELDS = {'status', 'admin_remarks'}


def resolve_action(changes) -> Action:
    """Map a partial update onto the action it has to be authorized as."""
    status = changes.get('status')
    if status is BookingStatus.CANCELLED and set(changes) - _STATUS_FIELDS:
        return Action.UPDATE_SCHEDULE
    if status in STATUS_ACTIONS:
        return STATUS_ACTIONS[status]
    return Action.UPDATE_SCHEDULE


def effective_request(actor: Actor, action: Action, booking, changes):
    """Apply the owner cancellation downgrade.

    An owner may always cancel. When an owner's edit or delete is refused
    only because the booking is past ``pending`` and the request asks for
    ``cancelled``, it is narrowed to a plain cancel and the other fields are
    dropped.
    """
    if (action in (Action.UPDATE_SCHEDULE, Action.DELETE)
            and not can_perform(actor, action, booking)
            and relationship_of(actor, booking) is Relationship.OWNER
            and changes.get('status') is BookingStatus.CANCELLED):
        return Action.CANCEL, {'status': BookingStatus.CANCELLED}
    return action, changes
