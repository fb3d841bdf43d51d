# -*- coding: utf-8 -*-
"""Unit-of-work helper around the Flask-SQLAlchemy session."""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session

from agreement_ledger.extensions import db

logger = logging.getLogger(__name__)


@contextmanager
def unit_of_work(label: str = "consent") -> Iterator[Session]:
    """
    Commit on success; roll back and re-raise on any failure.
    A failed ledger write therefore never leaves member flags behind.
    """
    session = db.session
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("[DB] %s transaction rolled back", label)
        raise
