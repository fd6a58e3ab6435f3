from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from database import Base
from docstore import DocumentStore
from identity import IdentityProvider


def make_session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Clock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def session_factory():
    return make_session_factory()


@pytest.fixture
def store(session_factory):
    return DocumentStore(session_factory)


@pytest.fixture
def outbox():
    return []


@pytest.fixture
def identity(session_factory, outbox):
    def send_mail(to: str, subject: str, token: str) -> None:
        outbox.append((to, subject, token))

    return IdentityProvider(session_factory, send_mail=send_mail)


@pytest.fixture
def clock():
    return Clock(datetime(2025, 6, 1, 12, 0))


@pytest.fixture
def clocked_identity(session_factory, outbox, clock):
    def send_mail(to: str, subject: str, token: str) -> None:
        outbox.append((to, subject, token))

    return IdentityProvider(session_factory, send_mail=send_mail, now=clock)
