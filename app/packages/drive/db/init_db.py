"""Database bootstrapping utilities."""

from __future__ import annotations

import logging

from app.packages.drive.db import session as db_session
from app.packages.drive.models import Item, UploadPart, UploadSession, User  # noqa: F401 - register tables
from app.packages.drive.models.base import Base

logger = logging.getLogger(__name__)


def init_db() -> None:
    """Create all database tables if they do not exist."""
    Base.metadata.create_all(bind=db_session.engine)
    logger.info("Database schema ensured on %s", db_session.engine.dialect.name)
