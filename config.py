import os
from dotenv import load_dotenv

# Load environment variables from .env file (if present)
load_dotenv()


class Config:
    """Base configuration for SecureGuard"""

    # ==== Security ====
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
    MIN_PASSWORD_LENGTH = int(os.getenv("MIN_PASSWORD_LENGTH", 6))

    # ==== Database ====
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///secureguard.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # ==== Logging ====
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # --- Tracking ---
    # Public base URL used to build tracking links in the outbox
    TRACKING_BASE_URL = os.getenv("TRACKING_BASE_URL", "http://localhost:5000")
    TOKEN_BYTES = int(os.getenv("TOKEN_BYTES", 24))
    TOKEN_MAX_ATTEMPTS = int(os.getenv("TOKEN_MAX_ATTEMPTS", 5))

    # --- Default admin (seeded by create_tables.py / `flask create-admin`) ---
    ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@example.com")
    ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "changeme")


class TestConfig(Config):
    """Configuration used by the test suite"""

    TESTING = True
    SECRET_KEY = "test-secret"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    TRACKING_BASE_URL = "http://phish.test"
    LOG_LEVEL = "WARNING"
