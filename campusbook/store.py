"""Reservation store and resource registry over the SQLAlchemy session.

Writes are not committed here; the booking service owns the transaction and
calls :meth:`ReservationStore.commit` once the check and the write are done.
"""
import logging

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError

from campusbook import db
from campusbook.lifecycle import BookingStatus
from campusbook.models import AuditLog, BookingSlotGuard, Reservation, Resource
from campusbook.policy import Role

logger = logging.getLogger(__name__)


class ReservationStore:

    def __init__(self):
        self.session = db.session

    # --- Resource registry (read side) ---
    def get_resource(self, resource_id):
        return self.session.get(Resource, resource_id)

    # --- Reservations ---
    def get(self, booking_id):
        return self.session.get(Reservation, booking_id)

    def approved_on(self, resource_id, date, exclude_id=None):
        q = Reservation.query.filter(
            Reservation.resource_id == resource_id,
            Reservation.date == date,
            Reservation.status == BookingStatus.APPROVED.value,
        )
        if exclude_id is not None:
            q = q.filter(Reservation.id != exclude_id)
        return q.order_by(Reservation.start_time.asc()).all()

    def insert(self, reservation):
        self.session.add(reservation)
        self.session.flush()
        return reservation

    def update(self, reservation):
        self.session.flush()
        return reservation

    def delete(self, reservation):
        self.session.delete(reservation)
        self.session.flush()

    def audit(self, action, actor, target, details=None):
        self.session.add(AuditLog(
            action=action,
            actor_username=actor.username,
            actor_role=actor.role.value,
            target=target,
            details=details,
        ))

    def lock_slot(self, resource_id, date):
        """Serialize check-then-write sequences for one resource and day.

        Writing the guard row takes the row lock (or the database write lock
        on SQLite) until the surrounding transaction ends, so a second writer
        for the same day waits until the first has committed its decision.
        """
        bumped = BookingSlotGuard.query.filter_by(resource_id=resource_id, date=date).update(
            {BookingSlotGuard.version: BookingSlotGuard.version + 1}, synchronize_session=False)
        if bumped:
            return
        try:
            with self.session.begin_nested():
                self.session.add(BookingSlotGuard(resource_id=resource_id, date=date, version=1))
        except IntegrityError:
            # another writer created the row first; wait on it like everyone else
            BookingSlotGuard.query.filter_by(resource_id=resource_id, date=date).update(
                {BookingSlotGuard.version: BookingSlotGuard.version + 1}, synchronize_session=False)

    def reload(self, reservation):
        """Re-read a reservation from the database; None once it is gone."""
        return self.session.get(Reservation, reservation.id, populate_existing=True)

    def commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()

    # --- Listing ---
    def search(self, actor, resource_id=None, date=None, start_date=None, end_date=None,
               status=None, requester_id=None, page=1, per_page=20):
        q = Reservation.query
        if resource_id is not None:
            q = q.filter(Reservation.resource_id == resource_id)
        if date is not None:
            q = q.filter(Reservation.date == date)
        if start_date is not None and end_date is not None:
            q = q.filter(Reservation.date >= start_date, Reservation.date <= end_date)
        if status is not None:
            q = q.filter(Reservation.status == status.value)
        if requester_id is not None:
            q = q.filter(Reservation.requester_id == requester_id)
        visibility = visible_to(actor)
        if visibility is not None:
            q = q.filter(visibility)
        q = q.order_by(Reservation.date.asc(), Reservation.start_time.asc(), Reservation.id.asc())
        return q.paginate(page=page, per_page=per_page, error_out=False)


def visible_to(actor):
    """SQL form of the ``view`` rule; None means no restriction."""
    if actor.is_admin:
        return None
    clauses = [
        Reservation.requester_id == actor.id,
        Reservation.status == BookingStatus.APPROVED.value,
    ]
    if actor.role is Role.TEACHER and actor.department_id is not None:
        clauses.append(and_(
            Reservation.requester_department_id == actor.department_id,
            Reservation.status.in_([BookingStatus.PENDING.value, BookingStatus.APPROVED.value]),
        ))
    return or_(*clauses)
