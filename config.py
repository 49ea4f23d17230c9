"""
Application configuration.
This module defines the configuration settings for the Flask application, including database connection, secret key,
payment webhook secret and mail delivery. It uses environment variables for sensitive information and defaults for
development. In production, make sure to set the appropriate environment variables and secure the secret key.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


class Config:
    """Base configuration shared by all environments."""

    # IMPORTANT: change this in production
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me-please")

    # Database: SQLite for development (simple file in project folder)
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        f"sqlite:///{BASE_DIR / 'equitender.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CSRF protection (JSON API blueprints are exempted in create_app)
    WTF_CSRF_ENABLED = True

    # Shared secret expected in the X-Webhook-Secret header of payment events.
    # Signature verification itself happens upstream of this service.
    PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "")

    # Mail delivery: "log" (dev) or "smtp"
    MAIL_BACKEND = os.environ.get("MAIL_BACKEND", "log")
    MAIL_DEFAULT_SENDER = os.environ.get("MAIL_DEFAULT_SENDER", "no-reply@equitender.local")
    SMTP_HOST = os.environ.get("SMTP_HOST", "localhost")
    SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
    SMTP_USERNAME = os.environ.get("SMTP_USERNAME", "")
    SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD", "")
    SMTP_USE_TLS = os.environ.get("SMTP_USE_TLS", "1") == "1"

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # App name (used in notification and email texts)
    APP_NAME = "Equitender"


class TestConfig(Config):
    """Configuration used by the pytest suite."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    WTF_CSRF_ENABLED = False
    PAYMENT_WEBHOOK_SECRET = "test-webhook-secret"
    MAIL_BACKEND = "log"
    LOG_LEVEL = "DEBUG"
