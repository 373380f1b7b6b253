import os

class BaseConfig:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SESSION_TIMEOUT_MINUTES = int(os.environ.get("SESSION_TIMEOUT_MINUTES", 120))
    API_TOKEN_MAX_AGE_SECONDS = int(os.environ.get("API_TOKEN_MAX_AGE_SECONDS", 8 * 3600))
    # Bookings
    MAX_BOOKING_DURATION_MINUTES = int(os.environ.get("MAX_BOOKING_DURATION_MINUTES", 240))
    RESOURCE_AUTO_APPROVE_ROLES = os.environ.get("RESOURCE_AUTO_APPROVE_ROLES", "admin")
    BOOKINGS_PAGE_SIZE = int(os.environ.get("BOOKINGS_PAGE_SIZE", 20))
    BOOKINGS_MAX_PAGE_SIZE = int(os.environ.get("BOOKINGS_MAX_PAGE_SIZE", 100))

class DevelopmentConfig(BaseConfig):
    # Default to instance/site.db unless overridden
    @staticmethod
    def database_uri(instance_path: str) -> str:
        db_path = os.environ.get("DATABASE_PATH")
        if db_path:
            return f"sqlite:///{db_path}"
        return "sqlite:///" + os.path.join(instance_path, "site.db")

class TestingConfig(BaseConfig):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URI", "sqlite:///:memory:")

class ProductionConfig(BaseConfig):
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URI", "sqlite:///site.db")
