# db.py

import logging
from typing import Optional

import pandas as pd
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session, select, func

from models import LabTest

logger = logging.getLogger(__name__)

DATABASE_URL = "sqlite:///ckd_pipeline.db"


def make_engine(url: str = DATABASE_URL, echo: bool = False):
    """
    Create the SQLModel engine.
    An in-memory SQLite URL shares one connection so every session sees
    the same database.
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)
    return create_engine(url, echo=echo)


def init_db(engine):
    """
    Create all tables in the database.
    Call this once at application startup.
    """
    SQLModel.metadata.create_all(engine)


def get_session(engine):
    """
    Return a new SQLModel Session.
    """
    return Session(engine)


def _clean(value):
    if pd.isna(value):
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def seed_catalog(engine, csv_path: str) -> int:
    """
    Seed the lab test catalog from a CSV file.
    Safe to call on every startup: an existing catalog is left as is.
    Returns the number of tests inserted.
    """
    with get_session(engine) as session:
        existing = session.exec(select(func.count()).select_from(LabTest)).one()
        if existing > 0:
            logger.info(f"Lab test catalog already holds {existing} tests, skipping seed")
            return 0

        df = pd.read_csv(csv_path)
        for _, row in df.iterrows():
            session.add(LabTest(
                test_name=row["test_name"].strip(),
                description=_clean(row.get("description")),
                unit=_clean(row.get("unit")),
                normal_min=_to_float(row.get("normal_min")),
                normal_max=_to_float(row.get("normal_max")),
                category=_clean(row.get("category")),
                kind=_clean(row.get("kind")),
            ))
        session.commit()
        logger.info(f"Seeded {len(df)} lab tests from {csv_path}")
        return len(df)


def _to_float(value) -> Optional[float]:
    value = _clean(value)
    return None if value is None else float(value)
