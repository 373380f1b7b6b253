from functools import wraps

from flask import g, request, session
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from campusbook import app
from campusbook.errors import AuthenticationError, AuthorizationError
from campusbook.models import User
from campusbook.policy import Actor, Role

TOKEN_SALT = 'api-token'


def _token_serializer():
    return URLSafeTimedSerializer(app.config.get('SECRET_KEY', 'changeme'))


def issue_token(username):
    return _token_serializer().dumps(username, salt=TOKEN_SALT)


def _username_from_token(token):
    max_age = int(app.config.get('API_TOKEN_MAX_AGE_SECONDS', 8 * 3600))
    try:
        return _token_serializer().loads(token, salt=TOKEN_SALT, max_age=max_age)
    except SignatureExpired:
        raise AuthenticationError('Token has expired')
    except BadSignature:
        raise AuthenticationError('Invalid token')


def actor_for(user):
    try:
        role = Role.parse(user.role)
    except ValueError:
        raise AuthorizationError(f"Role '{user.role}' cannot use bookings")
    return Actor(id=user.id, role=role, department_id=user.department_id, username=user.username)


def current_actor():
    """Resolve the calling actor from a bearer token or the login session."""
    username = None
    header = request.headers.get('Authorization', '')
    if header.startswith('Bearer '):
        username = _username_from_token(header.split(' ', 1)[1].strip())
    elif session.get('logged_in'):
        username = session.get('user')
    if not username:
        raise AuthenticationError()
    user = User.query.filter_by(username=username).first()
    if not user:
        raise AuthenticationError('User not found')
    return actor_for(user)


def api_login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        g.actor = current_actor()
        return fn(*args, **kwargs)
    return wrapper


def api_admin_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        g.actor = current_actor()
        if not g.actor.is_admin:
            raise AuthorizationError('Administrator access required')
        return fn(*args, **kwargs)
    return wrapper
