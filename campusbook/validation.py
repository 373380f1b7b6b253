"""Request payload parsing for the booking API.

Payloads arrive as JSON with camelCase keys; parsers return dicts keyed by
model attribute names with dates, times and statuses already converted.
"""
from datetime import datetime

from campusbook.errors import ValidationError
from campusbook.lifecycle import BookingStatus

DATE_FORMAT = '%Y-%m-%d'
TIME_FORMATS = ('%H:%M', '%H:%M:%S')

SCHEDULE_FIELDS = ('date', 'start_time', 'end_time')

_FIELD_NAMES = {
    'resourceId': 'resource_id',
    'date': 'date',
    'startTime': 'start_time',
    'endTime': 'end_time',
    'purpose': 'purpose',
    'attendees': 'attendees',
    'requirements': 'requirements',
    'additionalNotes': 'additional_notes',
    'status': 'status',
    'adminRemarks': 'admin_remarks',
}


def parse_id(value, field='id'):
    if isinstance(value, bool):
        raise ValidationError(f'Invalid {field} format', errors={field: 'Must be an integer id'})
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid {field} format', errors={field: 'Must be an integer id'})
    if parsed < 1:
        raise ValidationError(f'Invalid {field} format', errors={field: 'Must be a positive id'})
    return parsed


def parse_date(value):
    if not isinstance(value, str):
        raise ValueError('Expected YYYY-MM-DD')
    return datetime.strptime(value.strip(), DATE_FORMAT).date()


def parse_time(value):
    if not isinstance(value, str):
        raise ValueError('Expected HH:MM')
    for fmt in TIME_FORMATS:
        try:
            return datetime.strptime(value.strip(), fmt).time()
        except ValueError:
            continue
    raise ValueError('Expected HH:MM')


def _parse_field(name, value, errors, parsed):
    key = _FIELD_NAMES[name]
    try:
        if key == 'resource_id':
            parsed[key] = parse_id(value, name)
        elif key == 'date':
            parsed[key] = parse_date(value)
        elif key in ('start_time', 'end_time'):
            parsed[key] = parse_time(value)
        elif key == 'purpose':
            if not isinstance(value, str) or not value.strip():
                raise ValueError('Must be a non-empty string')
            if len(value) > 200:
                raise ValueError('Must be at most 200 characters')
            parsed[key] = value.strip()
        elif key == 'attendees':
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError('Must be an integer')
            if value < 1:
                raise ValueError('Must be at least 1')
            parsed[key] = value
        elif key == 'requirements':
            if not isinstance(value, list) or not all(isinstance(r, str) for r in value):
                raise ValueError('Must be a list of strings')
            parsed[key] = [r.strip() for r in value if r.strip()]
        elif key in ('additional_notes', 'admin_remarks'):
            if not isinstance(value, str):
                raise ValueError('Must be a string')
            parsed[key] = value
        elif key == 'status':
            parsed[key] = BookingStatus(value)
    except ValidationError as e:
        errors.update(e.errors)
    except ValueError as e:
        if key == 'status':
            errors[name] = 'Must be one of: ' + ', '.join(s.value for s in BookingStatus)
        else:
            errors[name] = str(e) if str(e) else 'Invalid value'


CREATE_REQUIRED = ('resourceId', 'date', 'startTime', 'endTime', 'purpose', 'attendees')
CREATE_OPTIONAL = ('requirements', 'additionalNotes')
UPDATE_FIELDS = ('date', 'startTime', 'endTime', 'purpose', 'attendees', 'requirements',
                 'additionalNotes', 'status', 'adminRemarks')


def parse_create(payload):
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object')
    errors = {}
    parsed = {}
    for name in CREATE_REQUIRED:
        if payload.get(name) is None:
            errors[name] = 'Required'
        else:
            _parse_field(name, payload[name], errors, parsed)
    for name in CREATE_OPTIONAL:
        if payload.get(name) is not None:
            _parse_field(name, payload[name], errors, parsed)
    if errors:
        raise ValidationError(errors=errors)
    return parsed


def parse_update(payload):
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object')
    errors = {}
    parsed = {}
    for name in UPDATE_FIELDS:
        if name in payload and payload[name] is not None:
            _parse_field(name, payload[name], errors, parsed)
    if errors:
        raise ValidationError(errors=errors)
    if not parsed:
        raise ValidationError('No changes supplied')
    return parsed


def check_schedule(start, end, max_minutes=None):
    if start >= end:
        raise ValidationError('End time must be after start time',
                              errors={'endTime': 'Must be after startTime'})
    if max_minutes:
        duration = (end.hour * 60 + end.minute) - (start.hour * 60 + start.minute)
        if duration > max_minutes:
            raise ValidationError(f'Booking exceeds max duration of {max_minutes} minutes.',
                                  errors={'endTime': f'Maximum duration is {max_minutes} minutes'})
