"""Shared SQLAlchemy base declarative class and model imports."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for ORM models."""


# Import model modules so metadata is populated before create_all.
from app.models import cart as _cart  # noqa: E402,F401
from app.models import chef as _chef  # noqa: E402,F401
from app.models import meal as _meal  # noqa: E402,F401
from app.models import order as _order  # noqa: E402,F401
from app.models import webhook_event as _webhook_event  # noqa: E402,F401
