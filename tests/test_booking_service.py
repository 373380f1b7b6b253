import unittest
from unittest import mock
import sys
import os
from datetime import date, time

os.environ['FLASK_ENV'] = 'testing'
os.environ['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///:memory:'

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from sqlalchemy.exc import OperationalError
from campusbook import app, db
from campusbook.auth import actor_for
from campusbook.errors import (AuthorizationError, ConflictError, InvalidTransitionError, NotFoundError,
                               ResourceUnavailableError, StoreError, ValidationError)
from campusbook.models import AuditLog, BookingSlotGuard, Department, Reservation, Resource, User
from campusbook.service import BookingService

DAY = '2026-11-02'


class BookingServiceTests(unittest.TestCase):

    def setUp(self):
        self.app = app
        self.ctx = self.app.app_context()
        self.ctx.push()
        db.create_all()

        cs = Department(name='Computer Science', code='CS')
        ma = Department(name='Mathematics', code='MA')
        db.session.add_all([cs, ma])
        db.session.flush()
        self.admin = User(username='admin', password_hash='x', role='admin')
        self.x = User(username='student-x', password_hash='x', role='student', department_id=cs.id)
        self.y = User(username='student-y', password_hash='x', role='student', department_id=cs.id)
        self.t = User(username='teacher-cs', password_hash='x', role='teacher', department_id=cs.id)
        self.u = User(username='teacher-ma', password_hash='x', role='faculty', department_id=ma.id)
        self.hall = Resource(name='Main Auditorium', location='Block A', capacity=300, status='available')
        self.closed = Resource(name='Old Hall', location='Block C', capacity=80, status='maintenance')
        db.session.add_all([self.admin, self.x, self.y, self.t, self.u, self.hall, self.closed])
        db.session.commit()

        self.service = BookingService()
        self.admin_actor = actor_for(self.admin)
        self.x_actor = actor_for(self.x)
        self.y_actor = actor_for(self.y)
        self.t_actor = actor_for(self.t)
        self.u_actor = actor_for(self.u)

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.ctx.pop()

    def request(self, start, end, **extra):
        payload = {
            'resourceId': self.hall.id,
            'date': DAY,
            'startTime': start,
            'endTime': end,
            'purpose': 'Club meeting',
            'attendees': 40,
        }
        payload.update(extra)
        return payload

    # --- create ---
    def test_admin_booking_is_auto_approved(self):
        b = self.service.create_booking(self.admin_actor, self.request('09:00', '10:00'))
        self.assertEqual(b.status, 'approved')
        self.assertEqual(b.approved_by_id, self.admin.id)
        self.assertIsNotNone(b.approved_at)

    def test_student_booking_waits_for_approval(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        self.assertEqual(b.status, 'pending')
        self.assertIsNone(b.approved_at)
        self.assertEqual(b.requester_department_id, self.x.department_id)

    def test_overlap_with_approved_booking_is_refused_at_creation(self):
        self.service.create_booking(self.admin_actor, self.request('09:00', '10:00'))
        with self.assertRaises(ConflictError):
            self.service.create_booking(self.x_actor, self.request('09:30', '10:30'))
        self.assertEqual(Reservation.query.count(), 1)

    def test_back_to_back_bookings_are_accepted(self):
        self.service.create_booking(self.admin_actor, self.request('09:00', '10:00'))
        b = self.service.create_booking(self.admin_actor, self.request('10:00', '11:00'))
        self.assertEqual(b.status, 'approved')

    def test_pending_requests_do_not_block_each_other(self):
        c = self.service.create_booking(self.x_actor, self.request('11:00', '12:00'))
        d = self.service.create_booking(self.y_actor, self.request('11:30', '12:30'))
        self.assertEqual((c.status, d.status), ('pending', 'pending'))

    def test_other_resources_and_days_are_independent(self):
        other = Resource(name='Seminar Hall', capacity=60, status='available')
        db.session.add(other)
        db.session.commit()
        self.service.create_booking(self.admin_actor, self.request('09:00', '10:00'))
        self.service.create_booking(self.admin_actor, self.request('09:00', '10:00', resourceId=other.id))
        self.service.create_booking(self.admin_actor, self.request('09:00', '10:00', date='2026-11-03'))
        self.assertEqual(Reservation.query.filter_by(status='approved').count(), 3)

    def test_start_must_precede_end(self):
        with self.assertRaises(ValidationError):
            self.service.create_booking(self.x_actor, self.request('10:00', '10:00'))
        with self.assertRaises(ValidationError):
            self.service.create_booking(self.x_actor, self.request('11:00', '10:00'))

    def test_missing_fields_and_bad_attendees_are_reported_per_field(self):
        with self.assertRaises(ValidationError) as cm:
            self.service.create_booking(self.x_actor, {'resourceId': 'abc', 'date': '02/11/2026',
                                                       'startTime': '9am', 'attendees': 0})
        errors = cm.exception.errors
        for field in ('resourceId', 'date', 'startTime', 'endTime', 'purpose', 'attendees'):
            self.assertIn(field, errors)

    def test_max_duration_comes_from_config(self):
        service = BookingService(config={'MAX_BOOKING_DURATION_MINUTES': 60})
        with self.assertRaises(ValidationError):
            service.create_booking(self.x_actor, self.request('09:00', '10:30'))

    def test_unknown_resource_is_not_found(self):
        with self.assertRaises(NotFoundError):
            self.service.create_booking(self.x_actor, self.request('09:00', '10:00', resourceId=999))

    def test_resource_under_maintenance_cannot_be_booked(self):
        with self.assertRaises(ResourceUnavailableError) as cm:
            self.service.create_booking(self.x_actor, self.request('09:00', '10:00', resourceId=self.closed.id))
        self.assertIn('maintenance', cm.exception.message)

    def test_create_takes_the_slot_guard_and_audits(self):
        self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        self.service.create_booking(self.y_actor, self.request('10:00', '11:00'))
        guard = BookingSlotGuard.query.filter_by(resource_id=self.hall.id, date=date(2026, 11, 2)).one()
        self.assertEqual(guard.version, 2)
        self.assertEqual(AuditLog.query.filter_by(action='booking_create').count(), 2)

    def test_round_trip_through_get(self):
        payload = self.request('14:00', '15:30', requirements=['projector', 'mic'], additionalNotes='Front rows')
        created = self.service.create_booking(self.x_actor, payload)
        fetched = self.service.get_booking(self.x_actor, created.id)
        self.assertEqual(fetched.date, date(2026, 11, 2))
        self.assertEqual((fetched.start_time, fetched.end_time), (time(14, 0), time(15, 30)))
        self.assertEqual(fetched.requirements, ['projector', 'mic'])
        self.assertEqual(fetched.additional_notes, 'Front rows')
        self.assertEqual((fetched.purpose, fetched.attendees), ('Club meeting', 40))

    # --- approval ---
    def test_first_approval_wins_for_overlapping_pending_requests(self):
        c = self.service.create_booking(self.x_actor, self.request('11:00', '12:00'))
        d = self.service.create_booking(self.y_actor, self.request('11:30', '12:30'))
        approved = self.service.update_booking(self.admin_actor, c.id, {'status': 'approved'})
        self.assertEqual(approved.status, 'approved')
        self.assertEqual(approved.approved_by_id, self.admin.id)
        with self.assertRaises(ConflictError):
            self.service.update_booking(self.admin_actor, d.id, {'status': 'approved'})
        self.assertEqual(db.session.get(Reservation, d.id).status, 'pending')

    def test_only_admin_approves(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        for actor in (self.x_actor, self.t_actor):
            with self.assertRaises(AuthorizationError):
                self.service.update_booking(actor, b.id, {'status': 'approved'})

    def test_reject_requires_remarks_and_leaves_booking_untouched(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        with self.assertRaises(ValidationError):
            self.service.update_booking(self.admin_actor, b.id, {'status': 'rejected'})
        self.assertEqual(db.session.get(Reservation, b.id).status, 'pending')
        rejected = self.service.update_booking(self.admin_actor, b.id,
                                               {'status': 'rejected', 'adminRemarks': 'Exam week'})
        self.assertEqual((rejected.status, rejected.admin_remarks), ('rejected', 'Exam week'))

    def test_rejected_booking_keeps_its_remarks(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        self.service.update_booking(self.admin_actor, b.id, {'status': 'rejected', 'adminRemarks': 'Exam week'})
        for blank in ('', '   '):
            with self.assertRaises(ValidationError) as cm:
                self.service.update_booking(self.admin_actor, b.id, {'adminRemarks': blank})
            self.assertIn('adminRemarks', cm.exception.errors)
        self.assertEqual(db.session.get(Reservation, b.id).admin_remarks, 'Exam week')
        changed = self.service.update_booking(self.admin_actor, b.id, {'adminRemarks': ' Hall closed '})
        self.assertEqual(changed.admin_remarks, 'Hall closed')
        self.assertEqual(changed.status, 'rejected')

    def test_rejected_booking_cannot_be_approved(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        self.service.update_booking(self.admin_actor, b.id, {'status': 'rejected', 'adminRemarks': 'No'})
        with self.assertRaises(InvalidTransitionError):
            self.service.update_booking(self.admin_actor, b.id, {'status': 'approved'})

    # --- cancel ---
    def test_owner_cancels_approved_booking_and_frees_the_slot(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        self.service.update_booking(self.admin_actor, b.id, {'status': 'approved'})
        cancelled = self.service.update_booking(self.x_actor, b.id, {'status': 'cancelled'})
        self.assertEqual(cancelled.status, 'cancelled')
        again = self.service.create_booking(self.y_actor, self.request('09:00', '10:00'))
        self.assertEqual(again.status, 'pending')
        self.service.update_booking(self.admin_actor, again.id, {'status': 'approved'})

    def test_cancelling_twice_is_an_invalid_transition(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        self.service.update_booking(self.x_actor, b.id, {'status': 'cancelled'})
        with self.assertRaises(InvalidTransitionError):
            self.service.update_booking(self.x_actor, b.id, {'status': 'cancelled'})

    def test_non_owner_cannot_cancel(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        for actor in (self.y_actor, self.t_actor):
            with self.assertRaises(AuthorizationError):
                self.service.update_booking(actor, b.id, {'status': 'cancelled'})

    def test_owner_edit_with_cancel_on_approved_booking_only_cancels(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        self.service.update_booking(self.admin_actor, b.id, {'status': 'approved'})
        result = self.service.update_booking(self.x_actor, b.id, {'status': 'cancelled', 'purpose': 'Renamed',
                                                                 'startTime': '15:00', 'endTime': '16:00'})
        self.assertEqual(result.status, 'cancelled')
        self.assertEqual(result.purpose, 'Club meeting')
        self.assertEqual(result.start_time, time(9, 0))

    # --- schedule edits ---
    def test_owner_reschedules_pending_booking(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        moved = self.service.update_booking(self.x_actor, b.id, {'startTime': '13:00', 'endTime': '14:00'})
        self.assertEqual((moved.start_time, moved.end_time), (time(13), time(14)))
        self.assertEqual(moved.updated_by_id, self.x.id)

    def test_owner_cannot_edit_approved_booking(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        self.service.update_booking(self.admin_actor, b.id, {'status': 'approved'})
        with self.assertRaises(AuthorizationError) as cm:
            self.service.update_booking(self.x_actor, b.id, {'startTime': '09:30'})
        self.assertIn('cancel', cm.exception.message)

    def test_reschedule_into_approved_slot_conflicts(self):
        self.service.create_booking(self.admin_actor, self.request('13:00', '14:00'))
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        with self.assertRaises(ConflictError):
            self.service.update_booking(self.x_actor, b.id, {'startTime': '13:30', 'endTime': '14:30'})

    def test_admin_moves_approved_booking_without_conflicting_with_itself(self):
        b = self.service.create_booking(self.admin_actor, self.request('09:00', '10:00'))
        moved = self.service.update_booking(self.admin_actor, b.id, {'endTime': '10:30'})
        self.assertEqual(moved.end_time, time(10, 30))
        self.assertEqual(moved.status, 'approved')

    def test_admin_moves_booking_to_another_day(self):
        b = self.service.create_booking(self.admin_actor, self.request('09:00', '10:00'))
        moved = self.service.update_booking(self.admin_actor, b.id, {'date': '2026-11-05'})
        self.assertEqual(moved.date, date(2026, 11, 5))
        days = {g.date for g in BookingSlotGuard.query.filter_by(resource_id=self.hall.id)}
        self.assertEqual(days, {date(2026, 11, 2), date(2026, 11, 5)})

    def test_booking_moved_by_another_writer_locks_its_new_day(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        self.service.create_booking(self.admin_actor, self.request('09:00', '10:00', date='2026-11-03'))
        booking_id = b.id
        real_lock = self.service.store.lock_slot
        locked = []

        def lock_after_move(resource_id, day):
            if not locked:
                # another admin moves the booking before our guard is taken
                db.session.execute(Reservation.__table__.update()
                                   .where(Reservation.__table__.c.id == booking_id)
                                   .values(date=date(2026, 11, 3)))
            locked.append(day)
            return real_lock(resource_id, day)

        with mock.patch.object(self.service.store, 'lock_slot', side_effect=lock_after_move):
            with self.assertRaises(ConflictError):
                self.service.update_booking(self.admin_actor, booking_id, {'status': 'approved'})
        self.assertEqual(locked, [date(2026, 11, 2), date(2026, 11, 3)])

    def test_booking_deleted_by_another_writer_is_not_found(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        booking_id = b.id
        real_lock = self.service.store.lock_slot

        def lock_after_delete(resource_id, day):
            db.session.execute(Reservation.__table__.delete().where(Reservation.__table__.c.id == booking_id))
            return real_lock(resource_id, day)

        for call in (lambda: self.service.update_booking(self.admin_actor, booking_id, {'status': 'approved'}),
                     lambda: self.service.delete_booking(self.admin_actor, booking_id)):
            with mock.patch.object(self.service.store, 'lock_slot', side_effect=lock_after_delete):
                with self.assertRaises(NotFoundError):
                    call()
        self.assertEqual(Reservation.query.count(), 1)

    def test_rescheduled_range_is_validated(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        with self.assertRaises(ValidationError):
            self.service.update_booking(self.x_actor, b.id, {'startTime': '10:30'})

    def test_only_admin_sets_remarks(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        with self.assertRaises(AuthorizationError):
            self.service.update_booking(self.x_actor, b.id, {'adminRemarks': 'please approve'})

    def test_empty_update_is_a_validation_error(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        with self.assertRaises(ValidationError):
            self.service.update_booking(self.x_actor, b.id, {})

    def test_update_unknown_booking_is_not_found(self):
        with self.assertRaises(NotFoundError):
            self.service.update_booking(self.admin_actor, 4242, {'status': 'approved'})

    # --- view / list ---
    def test_pending_booking_visibility(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        self.assertEqual(self.service.get_booking(self.t_actor, b.id).id, b.id)
        self.assertEqual(self.service.get_booking(self.admin_actor, b.id).id, b.id)
        for actor in (self.y_actor, self.u_actor):
            with self.assertRaises(AuthorizationError):
                self.service.get_booking(actor, b.id)

    def test_approved_bookings_are_public(self):
        b = self.service.create_booking(self.admin_actor, self.request('09:00', '10:00'))
        self.assertEqual(self.service.get_booking(self.y_actor, b.id).id, b.id)

    def test_list_applies_view_rule(self):
        mine = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        public = self.service.create_booking(self.admin_actor, self.request('13:00', '14:00'))
        cancelled = self.service.create_booking(self.x_actor, self.request('15:00', '16:00'))
        self.service.update_booking(self.x_actor, cancelled.id, {'status': 'cancelled'})

        def ids(actor, **args):
            return [b.id for b in self.service.list_bookings(actor, args).items]

        self.assertEqual(ids(self.y_actor), [public.id])
        self.assertEqual(ids(self.x_actor), [mine.id, public.id, cancelled.id])
        self.assertEqual(ids(self.t_actor), [mine.id, public.id])
        self.assertEqual(ids(self.u_actor), [public.id])
        self.assertEqual(ids(self.admin_actor), [mine.id, public.id, cancelled.id])
        self.assertEqual(ids(self.x_actor, userId='me'), [mine.id, cancelled.id])
        self.assertEqual(ids(self.admin_actor, status='pending'), [mine.id])

    def test_list_filters_and_paginates(self):
        for start in ('08:00', '09:00', '10:00'):
            end = f'{int(start[:2]) + 1:02d}:00'
            self.service.create_booking(self.admin_actor, self.request(start, end))
        self.service.create_booking(self.admin_actor, self.request('08:00', '09:00', date='2026-11-10'))
        page = self.service.list_bookings(self.admin_actor, {'date': DAY, 'limit': '2', 'page': '2'})
        self.assertEqual(page.total, 3)
        self.assertEqual([b.start_time for b in page.items], [time(10)])
        ranged = self.service.list_bookings(self.admin_actor, {'startDate': '2026-11-01', 'endDate': '2026-11-30'})
        self.assertEqual(ranged.total, 4)

    def test_list_rejects_bad_filters(self):
        with self.assertRaises(ValidationError):
            self.service.list_bookings(self.admin_actor, {'status': 'archived'})
        with self.assertRaises(ValidationError):
            self.service.list_bookings(self.admin_actor, {'resourceId': 'abc'})

    # --- delete ---
    def test_owner_deletes_only_pending(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        self.service.delete_booking(self.x_actor, b.id)
        self.assertIsNone(db.session.get(Reservation, b.id))

        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        self.service.update_booking(self.admin_actor, b.id, {'status': 'approved'})
        with self.assertRaises(AuthorizationError):
            self.service.delete_booking(self.x_actor, b.id)
        self.service.delete_booking(self.admin_actor, b.id)
        self.assertEqual(Reservation.query.count(), 0)
        self.assertEqual(AuditLog.query.filter_by(action='booking_delete').count(), 2)

    def test_stranger_cannot_delete(self):
        b = self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        with self.assertRaises(AuthorizationError):
            self.service.delete_booking(self.y_actor, b.id)

    # --- store failures ---
    def test_store_failure_rolls_back_and_raises_store_error(self):
        with mock.patch.object(self.service.store, 'insert',
                               side_effect=OperationalError('INSERT', {}, Exception('disk I/O error'))):
            with self.assertRaises(StoreError):
                self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        self.assertEqual(Reservation.query.count(), 0)
        self.assertEqual(BookingSlotGuard.query.count(), 0)

    def test_unexpected_failure_still_rolls_back(self):
        with mock.patch.object(self.service.store, 'insert', side_effect=RuntimeError('boom')):
            with self.assertRaises(RuntimeError):
                self.service.create_booking(self.x_actor, self.request('09:00', '10:00'))
        self.assertFalse(db.session.in_transaction())
        self.assertEqual(BookingSlotGuard.query.count(), 0)

if __name__ == '__main__':
    unittest.main()
