import os

os.environ.setdefault("EXPENSES_DATABASE_URL", "sqlite://")
os.environ.setdefault("EXPENSES_BCRYPT_ROUNDS", "4")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from database import Base
from models import User


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    with session_factory() as s:
        yield s


def _add_user(session, name: str, email: str) -> User:
    user = User(name=name, email=email, password_hash="not-a-real-hash")
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture
def user(session) -> User:
    return _add_user(session, "Ana", "ana@example.com")


@pytest.fixture
def other_user(session) -> User:
    return _add_user(session, "Ben", "ben@example.com")
