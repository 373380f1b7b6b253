import os
import logging
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import SQLAlchemyError
from campusbook.config import DevelopmentConfig, ProductionConfig, TestingConfig
from datetime import timedelta
from werkzeug.security import generate_password_hash

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = Flask(__name__, instance_relative_config=True)

# Select config based on FLASK_ENV
env = os.environ.get("FLASK_ENV", "development").lower()
if env == "production":
    app.config.from_object(ProductionConfig)
elif env == "testing":
    app.config.from_object(TestingConfig)
else:
    app.config.from_object(DevelopmentConfig)

# Compute DB URI for development using instance path
if env == "development":
    os.makedirs(app.instance_path, exist_ok=True)
    app.config['SQLALCHEMY_DATABASE_URI'] = DevelopmentConfig.database_uri(app.instance_path)

db = SQLAlchemy(app)

# Configure session lifetime
timeout_minutes = app.config.get('SESSION_TIMEOUT_MINUTES', 120)
try:
    app.permanent_session_lifetime = timedelta(minutes=int(timeout_minutes))
except (TypeError, ValueError):
    app.permanent_session_lifetime = timedelta(minutes=120)

def _parse_setting(val):
    v = str(val).strip()
    low = v.lower()
    if low in ("1", "true", "yes", "on"):
        return True
    if low in ("0", "false", "no", "off"):
        return False
    try:
        return int(v)
    except ValueError:
        return v

from campusbook.models import SystemSetting, User

with app.app_context():
    db.create_all()

    # Load DB-backed policy settings into app.config
    try:
        for s in SystemSetting.query.all():
            app.config[s.key] = _parse_setting(s.value)
    except SQLAlchemyError:
        logger.warning('Could not load system settings')

    admin_user = os.environ.get("ADMIN_USERNAME")
    admin_pw_hash = os.environ.get("ADMIN_PASSWORD_HASH")
    admin_pw_plain = os.environ.get("ADMIN_PASSWORD")
    if admin_user:
        try:
            existing = User.query.filter_by(username=admin_user).first()
            if not existing:
                pw_hash = admin_pw_hash if admin_pw_hash else generate_password_hash(admin_pw_plain or "admin")
                db.session.add(User(username=admin_user, password_hash=pw_hash, role="admin"))
                db.session.commit()
                logger.info('Bootstrapped admin user %s', admin_user)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception('Admin bootstrap failed')

from campusbook import routes
