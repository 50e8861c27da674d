import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from db import get_session
from main import app
from models import Item, User
from notifications import Notifier, get_notifier
from routers.auth import hash_password
from stock import derive_status


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def notifier(engine):
    return Notifier(lambda: Session(engine))


@pytest.fixture
def client(engine, notifier):
    def _get_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = _get_session
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(session, name, role="user", password="secret123"):
    user = User(
        name=name,
        email=f"{name.lower()}@gudangmitra.com",
        password=hash_password(password),
        role=role,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def make_item(session, name="Cable", quantity=10, min_quantity=5, **extra):
    item = Item(
        name=name,
        description=f"{name} description",
        category=extra.pop("category", "electronics"),
        quantity=quantity,
        min_quantity=min_quantity,
        status=derive_status(quantity, min_quantity),
        **extra,
    )
    session.add(item)
    session.commit()
    session.refresh(item)
    return item


@pytest.fixture
def admin(session):
    return make_user(session, "Admin", role="admin")


@pytest.fixture
def manager(session):
    return make_user(session, "Manager", role="manager")


@pytest.fixture
def requester(session):
    return make_user(session, "Budi")


def login(client, user, password="secret123"):
    response = client.post(
        "/auth/login", json={"email": user.email, "password": password}
    )
    assert response.status_code == 200, response.text
    return response
