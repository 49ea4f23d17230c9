"""
equitender/__init__.py

Flask application factory for Equitender, the tender/offer lifecycle engine.

Architecture:
- JSON API blueprints (auth, tenders, offers, notifications, payments).
- All status writes go through equitender.lifecycle; routes only parse input,
  resolve the actor and serialize results.
- Every LifecycleError is rendered by a single error handler as
  {"error": {"kind", "code", "message"}} with the error's HTTP status.

PostgreSQL-ready (SQLAlchemy + migrations), SQLite for development and tests.
"""

from __future__ import annotations

import logging

import click
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from .errors import LifecycleError, Unauthorized
from .extensions import csrf, db, login_manager, migrate
from .models import Organization, OrganizationMember, Role, User
from .notifications import init_fanout

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def configure_logging(app: Flask) -> None:
    """Root logging setup from LOG_LEVEL (idempotent across app instances)."""
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    root.setLevel(level)
    logging.getLogger("equitender").setLevel(level)


def create_app(config_object: str = "config.Config") -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    configure_logging(app)

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id: str) -> User | None:
        """Load user for Flask-Login."""
        if not str(user_id).isdigit():
            return None
        user = db.session.get(User, int(user_id))
        if user is None or not user.is_active:
            return None
        return user

    @login_manager.unauthorized_handler
    def unauthorized():
        raise Unauthorized("Authentication required.", code="authentication_required")

    init_fanout(app)

    # ----------------------------------------------------------------------
    # Blueprints (JSON API, CSRF exempt)
    # ----------------------------------------------------------------------
    from .blueprints.auth.routes import auth_bp
    from .blueprints.notifications.routes import notifications_bp
    from .blueprints.offers.routes import offers_bp
    from .blueprints.payments.routes import payments_bp
    from .blueprints.tenders.routes import tenders_bp

    for bp in (auth_bp, tenders_bp, offers_bp, notifications_bp, payments_bp):
        csrf.exempt(bp)
        app.register_blueprint(bp)

    # ----------------------------------------------------------------------
    # Errors
    # ----------------------------------------------------------------------
    @app.errorhandler(LifecycleError)
    def handle_lifecycle_error(exc: LifecycleError):
        logger.info("Rejected %s: %s (%s)", exc.kind, exc.message, exc.code)
        return jsonify({"error": exc.to_dict()}), exc.http_status

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        payload = {"kind": "http", "code": exc.name.lower().replace(" ", "_"), "message": exc.description}
        return jsonify({"error": payload}), exc.code

    # ----------------------------------------------------------------------
    # CLI
    # ----------------------------------------------------------------------
    @app.cli.command("close-expired-tenders")
    def close_expired_tenders_command():
        """Close every published tender whose deadline has passed."""
        from .lifecycle import tenders

        closed = tenders.close_expired()
        click.echo(f"Closed {len(closed)} expired tender(s).")

    @app.cli.command("create-user")
    @click.option("--email", required=True)
    @click.option("--password", required=True)
    @click.option("--name", default=None)
    @click.option("--organization", "organization_name", required=True, help="Organization name (created if missing).")
    @click.option("--role", type=click.Choice(Role.ALL), default=Role.OWNER, show_default=True)
    def create_user_command(email, password, name, organization_name, role):
        """Create a user and attach it to an organization."""
        email = email.strip().lower()
        if User.query.filter_by(email=email).first():
            raise click.ClickException(f"User {email} already exists.")

        org = Organization.query.filter_by(name=organization_name).first()
        if org is None:
            org = Organization(name=organization_name)
            db.session.add(org)
            db.session.flush()

        user = User(email=email, name=name, is_active=True)
        user.set_password(password)
        db.session.add(user)
        db.session.flush()

        db.session.add(OrganizationMember(organization_id=org.id, user_id=user.id, role=role))
        db.session.commit()
        click.echo(f"User {email} created ({role} of {org.name}).")

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    return app
