from datetime import datetime, time

import pytest
from sqlalchemy.orm import sessionmaker

from clinicbook.db import Base, build_engine
from clinicbook.schedule import upsert_practitioner, upsert_weekly_template

# Monday 2024-05-06, 07:00 clinic time.
NOW = datetime(2024, 5, 6, 7, 0)


def make_session_factory(tmp_path):
    db_path = tmp_path / "test_clinicbook.db"
    engine = build_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(bind=engine)
    return engine, sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def seed_practitioner(db, name="Dr. Kim", daily_max=None, is_active=True):
    practitioner = upsert_practitioner(db, name=name, department="Internal Medicine", is_active=is_active)
    upsert_weekly_template(
        db,
        practitioner_id=practitioner.id,
        weekday=0,
        start_time=time(9, 0),
        end_time=time(12, 0),
        slot_interval_minutes=15,
        daily_max=daily_max,
    )
    return practitioner


@pytest.fixture
def session_factory(tmp_path):
    engine, factory = make_session_factory(tmp_path)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
