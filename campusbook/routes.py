from flask import g, jsonify, request, session
from campusbook import app, db, _parse_setting
import logging
logger = logging.getLogger(__name__)
from campusbook.models import User, Resource, Reservation, AuditLog, BookingSlotGuard, SystemSetting, RESOURCE_STATUSES
from campusbook.auth import api_admin_required, api_login_required, issue_token
from campusbook.errors import BookingError, ConflictError, ValidationError, NotFoundError
from campusbook.lifecycle import Approved, BookingStatus, state_of
from campusbook.service import BookingService
from campusbook.store import visible_to
from campusbook.validation import parse_date
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash
import math

# --- Serialization ---
def _iso(value):
    return value.isoformat() if value else None

def _hhmm(value):
    return value.strftime('%H:%M') if value else None

def _resource_summary(resource):
    if resource is None:
        return None
    return {'id': resource.id, 'name': resource.name, 'location': resource.location, 'capacity': resource.capacity}

def _requester_summary(user):
    if user is None:
        return None
    department = None
    if user.department is not None:
        department = {'id': user.department.id, 'name': user.department.name, 'code': user.department.code}
    return {'id': user.id, 'username': user.username, 'name': user.name, 'email': user.email,
            'role': user.role, 'department': department}

def booking_json(b, include_related=True):
    data = {
        'id': b.id,
        'resourceId': b.resource_id,
        'date': _iso(b.date),
        'startTime': _hhmm(b.start_time),
        'endTime': _hhmm(b.end_time),
        'purpose': b.purpose,
        'attendees': b.attendees,
        'requirements': list(b.requirements or []),
        'additionalNotes': b.additional_notes,
        'status': b.status,
        'adminRemarks': b.admin_remarks,
        'requesterId': b.requester_id,
        'requesterDepartmentId': b.requester_department_id,
        'createdAt': _iso(b.created_at),
        'updatedAt': _iso(b.updated_at),
        'updatedBy': b.updated_by_id,
    }
    state = state_of(b)
    if isinstance(state, Approved):
        data['approvedAt'] = _iso(state.approved_at)
        data['approvedBy'] = state.approved_by
    if include_related:
        data['requester'] = _requester_summary(b.requester)
        data['resource'] = _resource_summary(b.resource)
    return data

def resource_json(r):
    return {
        'id': r.id,
        'name': r.name,
        'location': r.location,
        'capacity': r.capacity,
        'status': r.status,
        'statusNote': r.status_note,
        'amenities': list(r.amenities or []),
        'createdAt': _iso(r.created_at),
    }

def _pagination_json(pagination, limit):
    return {
        'total': pagination.total,
        'page': pagination.page,
        'limit': limit,
        'pages': math.ceil(pagination.total / limit) if limit else 0,
    }

def _json_body():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object')
    return payload

def _resource_fields(payload, partial=False):
    """Validated resource columns from a camelCase payload; partial skips absent keys."""
    errors = {}
    fields = {}
    if not partial or 'name' in payload:
        name = payload.get('name')
        if not isinstance(name, str) or len(name.strip()) < 2:
            errors['name'] = 'Must be at least 2 characters'
        else:
            fields['name'] = name.strip()
    if 'location' in payload:
        location = payload.get('location')
        if location is not None and not isinstance(location, str):
            errors['location'] = 'Must be a string'
        else:
            fields['location'] = (location or '').strip() or None
    if not partial or 'capacity' in payload:
        capacity = payload.get('capacity')
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
            errors['capacity'] = 'Must be an integer of at least 1'
        else:
            fields['capacity'] = capacity
    if not partial or 'amenities' in payload:
        amenities = payload.get('amenities') or []
        if not isinstance(amenities, list) or not all(isinstance(a, str) for a in amenities):
            errors['amenities'] = 'Must be a list of strings'
        else:
            fields['amenities'] = amenities
    if not partial or 'status' in payload:
        status_val = payload.get('status') or ('available' if not partial else None)
        if status_val not in RESOURCE_STATUSES:
            errors['status'] = 'Must be one of: ' + ', '.join(RESOURCE_STATUSES)
        else:
            fields['status'] = status_val
    if 'statusNote' in payload:
        fields['status_note'] = payload.get('statusNote')
    if errors:
        raise ValidationError(errors=errors)
    return fields

def _resource_audit(action, target, details):
    db.session.add(AuditLog(action=action, actor_username=g.actor.username, actor_role=g.actor.role.value,
                            target=target, details=details))

# --- Error handling ---
@app.errorhandler(BookingError)
def handle_booking_error(error):
    if error.status_code >= 500:
        logger.error('Booking request failed: %s', error.message)
    return jsonify(error.to_dict()), error.status_code

@app.errorhandler(404)
def handle_404(error):
    return jsonify({'success': False, 'message': 'Not found'}), 404

@app.errorhandler(405)
def handle_405(error):
    return jsonify({'success': False, 'message': 'Method not allowed'}), 405

@app.errorhandler(500)
def handle_500(error):
    logger.exception("Unhandled exception")
    return jsonify({'success': False, 'message': 'Internal server error'}), 500

@app.route("/")
def index():
    return jsonify({'service': 'campusbook', 'status': 'ok'}), 200

@app.route("/healthz")
def healthz():
    try:
        resource_count = Resource.query.count()
        booking_count = Reservation.query.count()
        pending_count = Reservation.query.filter_by(status=BookingStatus.PENDING.value).count()
        return jsonify({"status": "ok", "resources": resource_count, "bookings": booking_count,
                        "pending": pending_count}), 200
    except SQLAlchemyError as e:
        logger.exception("Health check failed")
        return jsonify({"status": "error", "message": str(e)}), 500

# --- Authentication ---
@app.route('/api/auth/login', methods=['POST'])
def api_login():
    payload = request.get_json(silent=True) or {}
    username = (payload.get('username') or '').strip()
    password = payload.get('password') or ''
    user = User.query.filter_by(username=username).first()
    if not user or not check_password_hash(user.password_hash, password):
        logger.warning('Failed login for %s', username)
        return jsonify({'success': False, 'message': 'Invalid credentials'}), 401
    session['logged_in'] = True
    session['user'] = user.username
    session['role'] = user.role
    session.permanent = True
    return jsonify({'success': True, 'data': {'token': issue_token(user.username), 'role': user.role}}), 200

@app.route('/api/auth/logout', methods=['POST'])
def api_logout():
    session.clear()
    return jsonify({'success': True, 'message': 'Logged out'}), 200

@app.route('/api/auth/me', methods=['GET'])
@api_login_required
def api_me():
    actor = g.actor
    return jsonify({'success': True, 'data': {'id': actor.id, 'username': actor.username,
                                              'role': actor.role.value, 'departmentId': actor.department_id}}), 200

# --- Bookings ---
@app.route('/api/bookings', methods=['GET'])
@api_login_required
def list_bookings():
    pagination = BookingService().list_bookings(g.actor, request.args)
    return jsonify({
        'success': True,
        'data': [booking_json(b) for b in pagination.items],
        'pagination': _pagination_json(pagination, pagination.per_page),
    }), 200

@app.route('/api/bookings', methods=['POST'])
@api_login_required
def create_booking():
    booking = BookingService().create_booking(g.actor, _json_body())
    message = ('Resource booked successfully' if booking.status == BookingStatus.APPROVED.value
               else 'Booking request submitted for approval')
    return jsonify({'success': True, 'message': message, 'data': booking_json(booking)}), 201

@app.route('/api/bookings/<booking_id>', methods=['GET'])
@api_login_required
def get_booking(booking_id):
    booking = BookingService().get_booking(g.actor, booking_id)
    return jsonify({'success': True, 'data': booking_json(booking)}), 200

@app.route('/api/bookings/<booking_id>', methods=['PUT'])
@api_login_required
def update_booking(booking_id):
    booking = BookingService().update_booking(g.actor, booking_id, _json_body())
    return jsonify({'success': True, 'message': 'Booking updated successfully', 'data': booking_json(booking)}), 200

@app.route('/api/bookings/<booking_id>', methods=['DELETE'])
@api_login_required
def delete_booking(booking_id):
    BookingService().delete_booking(g.actor, booking_id)
    return jsonify({'success': True, 'message': 'Booking deleted successfully'}), 200

# --- Resources ---
@app.route('/api/resources', methods=['GET'])
@api_login_required
def list_resources():
    status_val = (request.args.get('status') or '').strip()
    capacity = request.args.get('capacity')
    search = (request.args.get('search') or '').strip()
    date_val = (request.args.get('date') or '').strip()
    page = request.args.get('page', 1, type=int) or 1
    limit = request.args.get('limit', app.config.get('BOOKINGS_PAGE_SIZE', 20), type=int) or 20
    limit = min(max(limit, 1), int(app.config.get('BOOKINGS_MAX_PAGE_SIZE', 100)))

    q = Resource.query
    if status_val:
        q = q.filter(Resource.status == status_val)
    if capacity:
        try:
            q = q.filter(Resource.capacity >= int(capacity))
        except ValueError:
            raise ValidationError('Invalid capacity filter', errors={'capacity': 'Must be an integer'})
    if search:
        pattern = f'%{search}%'
        q = q.filter(or_(Resource.name.ilike(pattern), Resource.location.ilike(pattern)))
    pagination = q.order_by(Resource.name.asc()).paginate(page=max(page, 1), per_page=limit, error_out=False)

    items = [resource_json(r) for r in pagination.items]
    if date_val:
        try:
            day = parse_date(date_val)
        except ValueError:
            raise ValidationError('Invalid date format', errors={'date': 'Expected YYYY-MM-DD'})
        ids = [r['id'] for r in items]
        bq = Reservation.query.filter(Reservation.resource_id.in_(ids), Reservation.date == day)
        visibility = visible_to(g.actor)
        if visibility is not None:
            bq = bq.filter(visibility)
        by_resource = {}
        for b in bq.order_by(Reservation.start_time.asc()).all():
            by_resource.setdefault(b.resource_id, []).append(booking_json(b, include_related=False))
        for item in items:
            item['bookings'] = by_resource.get(item['id'], [])
    return jsonify({'success': True, 'data': items, 'pagination': _pagination_json(pagination, limit)}), 200

@app.route('/api/resources', methods=['POST'])
@api_admin_required
def create_resource():
    fields = _resource_fields(_json_body())
    if Resource.query.filter_by(name=fields['name']).first():
        raise ValidationError('Resource with this name already exists', errors={'name': 'Already exists'})

    r = Resource(created_by=g.actor.username, **fields)
    db.session.add(r)
    try:
        db.session.flush()
        _resource_audit('resource_add', f'resource:{r.id}',
                        f'name={r.name}, capacity={r.capacity}, location={r.location}')
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception('Resource creation failed')
        raise
    return jsonify({'success': True, 'message': 'Resource created successfully', 'data': resource_json(r)}), 201

@app.route('/api/resources/<int:resource_id>', methods=['GET'])
@api_login_required
def get_resource(resource_id):
    r = db.session.get(Resource, resource_id)
    if r is None:
        raise NotFoundError('Resource not found')
    bq = Reservation.query.filter(Reservation.resource_id == r.id)
    date_val = (request.args.get('date') or '').strip()
    if date_val:
        try:
            bq = bq.filter(Reservation.date == parse_date(date_val))
        except ValueError:
            raise ValidationError('Invalid date format', errors={'date': 'Expected YYYY-MM-DD'})
    visibility = visible_to(g.actor)
    if visibility is not None:
        bq = bq.filter(visibility)
    data = resource_json(r)
    data['bookings'] = [booking_json(b, include_related=False)
                        for b in bq.order_by(Reservation.date.asc(), Reservation.start_time.asc()).all()]
    return jsonify({'success': True, 'data': data}), 200

@app.route('/api/resources/<int:resource_id>', methods=['PUT'])
@api_admin_required
def update_resource(resource_id):
    r = db.session.get(Resource, resource_id)
    if r is None:
        raise NotFoundError('Resource not found')
    fields = _resource_fields(_json_body(), partial=True)
    if not fields:
        raise ValidationError('No changes supplied')
    if 'name' in fields and Resource.query.filter(Resource.name == fields['name'], Resource.id != r.id).first():
        raise ValidationError('Resource with this name already exists', errors={'name': 'Already exists'})
    for key, value in fields.items():
        setattr(r, key, value)
    try:
        _resource_audit('resource_update', f'resource:{r.id}', ', '.join(f'{k}={v}' for k, v in sorted(fields.items())))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception('Resource update failed')
        raise
    logger.info('Resource %s updated by %s', r.id, g.actor.username)
    return jsonify({'success': True, 'message': 'Resource updated successfully', 'data': resource_json(r)}), 200

@app.route('/api/resources/<int:resource_id>', methods=['DELETE'])
@api_admin_required
def delete_resource(resource_id):
    r = db.session.get(Resource, resource_id)
    if r is None:
        raise NotFoundError('Resource not found')
    active = Reservation.query.filter(
        Reservation.resource_id == r.id,
        Reservation.status.in_([BookingStatus.PENDING.value, BookingStatus.APPROVED.value]),
    ).count()
    if active:
        raise ConflictError(f'Resource has {active} pending or approved bookings; cancel them first')
    name = r.name
    try:
        BookingSlotGuard.query.filter_by(resource_id=r.id).delete(synchronize_session=False)
        # closed bookings go with the resource through the reservations cascade
        db.session.delete(r)
        _resource_audit('resource_delete', f'resource:{resource_id}', f'name={name}')
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception('Resource deletion failed')
        raise
    logger.info('Resource %s deleted by %s', resource_id, g.actor.username)
    return jsonify({'success': True, 'message': 'Resource deleted successfully'}), 200

@app.route('/api/resources/<int:resource_id>/status', methods=['PATCH'])
@api_admin_required
def update_resource_status(resource_id):
    r = db.session.get(Resource, resource_id)
    if r is None:
        raise NotFoundError('Resource not found')
    payload = _json_body()
    status_val = payload.get('status')
    if status_val not in RESOURCE_STATUSES:
        raise ValidationError(errors={'status': 'Must be one of: ' + ', '.join(RESOURCE_STATUSES)})
    previous = r.status
    r.status = status_val
    r.status_note = payload.get('statusNote')
    _resource_audit('resource_status', f'resource:{r.id}', f'{previous}->{status_val}')
    db.session.commit()
    logger.info('Resource %s status %s -> %s', r.id, previous, status_val)
    return jsonify({'success': True, 'data': resource_json(r)}), 200

@app.route('/api/resources/<int:resource_id>/availability', methods=['GET'])
@api_login_required
def resource_availability(resource_id):
    r = db.session.get(Resource, resource_id)
    if r is None:
        raise NotFoundError('Resource not found')
    try:
        day = parse_date(request.args.get('date'))
    except ValueError:
        raise ValidationError('Invalid date format', errors={'date': 'Expected YYYY-MM-DD'})
    busy = Reservation.query.filter_by(resource_id=r.id, date=day, status=BookingStatus.APPROVED.value) \
        .order_by(Reservation.start_time.asc()).all()
    return jsonify({'success': True, 'data': {
        'resource': resource_json(r),
        'date': day.isoformat(),
        'available': r.status == 'available',
        'busy': [{'id': b.id, 'startTime': _hhmm(b.start_time), 'endTime': _hhmm(b.end_time),
                  'purpose': b.purpose} for b in busy],
    }}), 200

# --- Booking policy settings ---
SETTING_KEYS = {
    'MAX_BOOKING_DURATION_MINUTES': int,
    'RESOURCE_AUTO_APPROVE_ROLES': str,
    'BOOKINGS_PAGE_SIZE': int,
    'BOOKINGS_MAX_PAGE_SIZE': int,
}

@app.route('/api/admin/settings', methods=['GET'])
@api_admin_required
def get_settings():
    return jsonify({'success': True, 'data': {k: app.config.get(k) for k in SETTING_KEYS}}), 200

@app.route('/api/admin/settings', methods=['PUT'])
@api_admin_required
def update_settings():
    payload = _json_body()
    errors = {}
    for key, value in payload.items():
        kind = SETTING_KEYS.get(key)
        if kind is None:
            errors[key] = 'Unknown setting'
        elif kind is int and (isinstance(value, bool) or not isinstance(value, int) or value < 1):
            errors[key] = 'Must be a positive integer'
        elif kind is str and not isinstance(value, str):
            errors[key] = 'Must be a string'
    if errors:
        raise ValidationError(errors=errors)
    for key, value in payload.items():
        s = SystemSetting.query.filter_by(key=key).first()
        if s is None:
            s = SystemSetting(key=key, value=str(value), group='bookings')
            db.session.add(s)
        else:
            s.value = str(value)
    db.session.add(AuditLog(action='settings_update', actor_username=g.actor.username, actor_role=g.actor.role.value,
                            target='settings', details=', '.join(f'{k}={v}' for k, v in payload.items())))
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception('Settings update failed')
        raise
    # the running config follows the stored rows only once they are committed
    for key, value in payload.items():
        app.config[key] = _parse_setting(value)
    return jsonify({'success': True, 'data': {k: app.config.get(k) for k in SETTING_KEYS}}), 200
