from campusbook import db
from datetime import datetime

RESOURCE_STATUSES = ('available', 'unavailable', 'maintenance')

class Department(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    code = db.Column(db.String(20), unique=True)

    def __repr__(self):
        return f"Department('{self.name}')"

class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='student')
    name = db.Column(db.String(100))
    email = db.Column(db.String(120))
    department_id = db.Column(db.Integer, db.ForeignKey('department.id'), nullable=True)

    department = db.relationship('Department', backref=db.backref('members', lazy=True), lazy=True)

    def __repr__(self):
        return f"User('{self.username}', role='{self.role}')"

class SystemSetting(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False)
    value = db.Column(db.String(200), nullable=False)
    group = db.Column(db.String(50), nullable=True)

    def __repr__(self):
        return f"SystemSetting('{self.key}')"

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(50), nullable=False)
    actor_username = db.Column(db.String(80), nullable=True)
    actor_role = db.Column(db.String(20), nullable=True)
    target = db.Column(db.String(120), nullable=True)
    details = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"AuditLog(action='{self.action}', actor='{self.actor_username}', target='{self.target}')"

# Resources and Booking
class Resource(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    location = db.Column(db.String(120), nullable=True)
    capacity = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='available')
    status_note = db.Column(db.String(200), nullable=True)
    amenities = db.Column(db.JSON, nullable=True)
    created_by = db.Column(db.String(80), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"Resource('{self.name}', status='{self.status}')"

class Reservation(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    resource_id = db.Column(db.Integer, db.ForeignKey('resource.id'), nullable=False, index=True)
    date = db.Column(db.Date, nullable=False, index=True)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    requester_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    # Captured at creation; not updated if the requester moves department
    requester_department_id = db.Column(db.Integer, db.ForeignKey('department.id'), nullable=True)
    purpose = db.Column(db.String(200), nullable=False)
    attendees = db.Column(db.Integer, nullable=False, default=1)
    requirements = db.Column(db.JSON, nullable=True)
    additional_notes = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='pending', index=True)
    admin_remarks = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    approved_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)

    resource = db.relationship('Resource', backref=db.backref('reservations', lazy=True, cascade="all, delete-orphan"), lazy=True)
    requester = db.relationship('User', foreign_keys=[requester_id], lazy=True)
    requester_department = db.relationship('Department', lazy=True)
    __table_args__ = (db.CheckConstraint('attendees >= 1', name='ck_reservation_attendees'),)

    def __repr__(self):
        return f"Reservation(resource_id={self.resource_id}, {self.date} {self.start_time}->{self.end_time}, status='{self.status}')"

# One row per (resource, date); written before every check-then-write on that day
class BookingSlotGuard(db.Model):
    __tablename__ = 'booking_slot_guard'
    id = db.Column(db.Integer, primary_key=True)
    resource_id = db.Column(db.Integer, db.ForeignKey('resource.id'), nullable=False)
    date = db.Column(db.Date, nullable=False)
    version = db.Column(db.Integer, nullable=False, default=0)
    __table_args__ = (db.UniqueConstraint('resource_id', 'date', name='uix_slot_guard_resource_date'),)

    def __repr__(self):
        return f"BookingSlotGuard(resource_id={self.resource_id}, date='{self.date}', version={self.version})"
