"""Booking use cases: create, read, update and delete reservations.

Every mutation runs inside one transaction that first takes the slot guard
for the affected (resource, date) pairs, then re-reads the booking, decides,
and writes. A failure anywhere rolls the whole transaction back.
"""
import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from campusbook import app
from campusbook.errors import (AuthorizationError, BookingError, ConflictError, NotFoundError,
                               ResourceUnavailableError, StoreError, ValidationError)
from campusbook.lifecycle import BookingStatus, TERMINAL, apply_state, initial_state, transition
from campusbook.models import Reservation
from campusbook.overlap import conflicts
from campusbook.policy import Action, Relationship, can_perform, effective_request, relationship_of, resolve_action
from campusbook.store import ReservationStore
from campusbook.validation import (SCHEDULE_FIELDS, check_schedule, parse_create, parse_date, parse_id,
                                   parse_update)

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ('date', 'start_time', 'end_time', 'purpose', 'attendees', 'requirements',
                   'additional_notes')


def _denial_message(actor, action, booking):
    if action in (Action.APPROVE, Action.REJECT):
        return 'Only administrators can approve or reject bookings'
    if action is Action.CANCEL:
        return 'You can only cancel your own bookings'
    if action is Action.DELETE:
        return 'You can only delete your own pending bookings'
    if action is Action.UPDATE_SCHEDULE:
        if (relationship_of(actor, booking) is Relationship.OWNER
                and booking.status == BookingStatus.APPROVED.value):
            return 'Cannot modify the schedule of an approved booking. Please cancel and create a new request.'
        return 'You can only update your own pending bookings'
    return 'Forbidden'


class BookingService:

    def __init__(self, store=None, config=None):
        self.store = store or ReservationStore()
        self.config = config if config is not None else app.config

    # --- settings ---
    def _max_minutes(self):
        try:
            return int(self.config.get('MAX_BOOKING_DURATION_MINUTES', 240))
        except (TypeError, ValueError):
            return 240

    def _auto_approve_roles(self):
        roles_str = self.config.get('RESOURCE_AUTO_APPROVE_ROLES') or 'admin'
        return {r.strip() for r in str(roles_str).split(',') if r.strip()}

    def _page_limits(self):
        default = int(self.config.get('BOOKINGS_PAGE_SIZE', 20))
        maximum = int(self.config.get('BOOKINGS_MAX_PAGE_SIZE', 100))
        return default, maximum

    # --- transaction helper ---
    def _atomically(self, fn):
        try:
            result = fn()
            self.store.commit()
            return result
        except BookingError:
            self.store.rollback()
            raise
        except SQLAlchemyError:
            self.store.rollback()
            logger.exception('Reservation store failure')
            raise StoreError()
        except Exception:
            self.store.rollback()
            raise

    def _load(self, booking_id):
        booking = self.store.get(parse_id(booking_id, 'bookingId'))
        if booking is None:
            raise NotFoundError('Booking not found')
        return booking

    # --- use cases ---
    def create_booking(self, actor, payload):
        data = parse_create(payload)
        check_schedule(data['start_time'], data['end_time'], self._max_minutes())

        resource = self.store.get_resource(data['resource_id'])
        if resource is None:
            raise NotFoundError('Resource not found')
        if resource.status != 'available':
            raise ResourceUnavailableError(f'Resource is currently {resource.status}')

        now = datetime.utcnow()
        state = initial_state(actor, now, self._auto_approve_roles())
        reservation = Reservation(
            resource_id=resource.id,
            date=data['date'],
            start_time=data['start_time'],
            end_time=data['end_time'],
            requester_id=actor.id,
            requester_department_id=actor.department_id,
            purpose=data['purpose'],
            attendees=data['attendees'],
            requirements=data.get('requirements'),
            additional_notes=data.get('additional_notes'),
            created_at=now,
            updated_at=now,
        )
        apply_state(reservation, state)

        def write():
            self.store.lock_slot(resource.id, reservation.date)
            if conflicts(self.store, resource.id, reservation.date,
                         reservation.start_time, reservation.end_time):
                raise ConflictError('Time slot is already booked')
            self.store.insert(reservation)
            self.store.audit('booking_create', actor, f'reservation:{reservation.id}',
                             f'resource={resource.id} {reservation.date} '
                             f'{reservation.start_time:%H:%M}-{reservation.end_time:%H:%M} '
                             f'status={reservation.status}')
            return reservation

        created = self._atomically(write)
        logger.info('Reservation %s created by %s with status %s', created.id, actor.username, created.status)
        return created

    def get_booking(self, actor, booking_id):
        booking = self._load(booking_id)
        if not can_perform(actor, Action.VIEW, booking):
            raise AuthorizationError('Forbidden')
        return booking

    def list_bookings(self, actor, args):
        filters = {}
        if args.get('resourceId'):
            filters['resource_id'] = parse_id(args['resourceId'], 'resourceId')
        try:
            if args.get('date'):
                filters['date'] = parse_date(args['date'])
            if args.get('startDate') and args.get('endDate'):
                filters['start_date'] = parse_date(args['startDate'])
                filters['end_date'] = parse_date(args['endDate'])
        except ValueError:
            raise ValidationError('Invalid date format', errors={'date': 'Expected YYYY-MM-DD'})
        status = (args.get('status') or 'all').strip().lower()
        if status != 'all':
            try:
                filters['status'] = BookingStatus(status)
            except ValueError:
                raise ValidationError('Invalid status filter', errors={'status': 'Unknown status'})
        user_id = (args.get('userId') or '').strip()
        if user_id == 'me':
            filters['requester_id'] = actor.id
        elif user_id and user_id != 'all':
            filters['requester_id'] = parse_id(user_id, 'userId')

        default_limit, max_limit = self._page_limits()
        try:
            page = max(int(args.get('page') or 1), 1)
            limit = min(max(int(args.get('limit') or default_limit), 1), max_limit)
        except (TypeError, ValueError):
            raise ValidationError('Invalid pagination parameters')
        return self.store.search(actor, page=page, per_page=limit, **filters)

    def update_booking(self, actor, booking_id, payload):
        changes = parse_update(payload)
        booking_id = parse_id(booking_id, 'bookingId')

        def write():
            booking = self._load_locked(booking_id, changes.get('date'))
            self._apply_update(actor, booking, dict(changes))
            return booking

        updated = self._atomically(write)
        logger.info('Reservation %s updated by %s, status %s', updated.id, actor.username, updated.status)
        return updated

    def delete_booking(self, actor, booking_id):
        booking_id = parse_id(booking_id, 'bookingId')

        def write():
            booking = self._load_locked(booking_id)
            if not can_perform(actor, Action.DELETE, booking):
                raise AuthorizationError(_denial_message(actor, Action.DELETE, booking))
            target = f'reservation:{booking.id}'
            details = f'status={booking.status}'
            self.store.delete(booking)
            self.store.audit('booking_delete', actor, target, details)

        self._atomically(write)
        logger.info('Reservation %s deleted by %s', booking_id, actor.username)

    # --- helpers ---
    def _load_locked(self, booking_id, new_date=None):
        """Lock every day the booking touches, then return its current row.

        The date read before locking may be stale; if another writer moved
        the booking meanwhile, the new day is locked too and the row re-read.
        """
        booking = self._load(booking_id)
        locked = set()
        while True:
            days = {booking.date}
            if new_date is not None:
                days.add(new_date)
            # fixed order so two writers never wait on each other crosswise
            for day in sorted(days - locked):
                self.store.lock_slot(booking.resource_id, day)
                locked.add(day)
            booking = self.store.reload(booking)
            if booking is None:
                raise NotFoundError('Booking not found')
            if booking.date in locked:
                return booking

    def _apply_update(self, actor, booking, changes):
        if 'admin_remarks' in changes and not actor.is_admin:
            raise AuthorizationError('Only administrators can set admin remarks')

        current = BookingStatus(booking.status)
        status = changes.get('status')
        # restating the current status next to field edits is just an edit
        if status is current and current not in TERMINAL and set(changes) - {'status', 'admin_remarks'}:
            del changes['status']

        action = resolve_action(changes)
        action, changes = effective_request(actor, action, booking, changes)
        if not can_perform(actor, action, booking):
            logger.warning('%s denied %s on reservation %s (%s)', actor.username, action.value,
                           booking.id, booking.status)
            raise AuthorizationError(_denial_message(actor, action, booking))

        now = datetime.utcnow()
        new_state = None
        if 'status' in changes:
            new_state = transition(current, changes['status'], actor, now,
                                   remarks=changes.get('admin_remarks'))
        final_status = new_state.status if new_state is not None else current
        if final_status is BookingStatus.REJECTED and 'admin_remarks' in changes:
            # a rejected booking always keeps its reason
            remarks = changes['admin_remarks'].strip()
            if not remarks:
                raise ValidationError('Admin remarks cannot be cleared on a rejected booking',
                                      errors={'adminRemarks': 'Required for rejected bookings'})
            changes['admin_remarks'] = remarks

        schedule_changed = any(f in changes for f in SCHEDULE_FIELDS)
        new_date = changes.get('date', booking.date)
        new_start = changes.get('start_time', booking.start_time)
        new_end = changes.get('end_time', booking.end_time)
        if schedule_changed:
            check_schedule(new_start, new_end, self._max_minutes())

        becoming_approved = final_status is BookingStatus.APPROVED and current is not BookingStatus.APPROVED
        occupies = final_status in (BookingStatus.PENDING, BookingStatus.APPROVED)
        if becoming_approved or (schedule_changed and occupies):
            if conflicts(self.store, booking.resource_id, new_date, new_start, new_end,
                         exclude_id=booking.id):
                raise ConflictError('The requested time slot conflicts with an existing booking')

        for field in EDITABLE_FIELDS:
            if field in changes:
                setattr(booking, field, changes[field])
        if 'admin_remarks' in changes:
            booking.admin_remarks = changes['admin_remarks']
        if new_state is not None:
            apply_state(booking, new_state)
        booking.updated_at = now
        booking.updated_by_id = actor.id
        self.store.update(booking)

        audit_action = {
            Action.APPROVE: 'booking_approve',
            Action.REJECT: 'booking_reject',
            Action.CANCEL: 'booking_cancel',
        }.get(action, 'booking_update')
        self.store.audit(audit_action, actor, f'reservation:{booking.id}',
                         f'{current.value}->{booking.status} fields={",".join(sorted(changes))}')
