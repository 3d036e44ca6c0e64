import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("PAYMENT_PROVIDER", "stub")
os.environ.setdefault("NOTIFICATION_WEBHOOK_URL", "")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from coachbook.db.session import Base
from coachbook.services import notification_service


@pytest.fixture()
def db_session():
    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
    TestingSessionLocal = sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
    )
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def notifications(monkeypatch):
    sent = []

    def fake_notify(recipient, kind, context=None):
        sent.append((recipient, kind, context or {}))

    monkeypatch.setattr(notification_service, "notify", fake_notify)
    return sent
