"""
Central place for Flask extensions.

Extensions are bound to the app in create_app(); modules import the instances
from here to avoid circular imports.

- db: constraint names follow a fixed convention so Alembic migrations can
  drop and recreate the partial unique indexes that guard offers.
- login_manager: JSON API, so no login view; unauthenticated access is turned
  into an Unauthorized error by the handler registered in create_app().
"""

from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf import CSRFProtect
from sqlalchemy import MetaData

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

db = SQLAlchemy(metadata=MetaData(naming_convention=NAMING_CONVENTION))
migrate = Migrate()

login_manager = LoginManager()

csrf = CSRFProtect()
