# tests/conftest.py
import os
import sys
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Лимитер должен быть выключен до импорта приложения
os.environ["TESTING"] = "true"

# fmt: off
from workshop_votes import database, models  # noqa: E402
from workshop_votes.main import app  # noqa: E402

# fmt: on


@pytest.fixture(scope="session")
def temp_db():
    """Создаёт временный файл SQLite на время сессии тестов."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    yield db_path
    os.close(db_fd)
    if os.path.exists(db_path):
        os.unlink(db_path)


@pytest.fixture(scope="session")
def test_engine(temp_db):
    """Создаёт движок для временной БД и инициализирует схему."""
    engine = create_engine(
        f"sqlite:///{temp_db}", connect_args={"check_same_thread": False}
    )
    models.Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(test_engine):
    """Создаёт новую сессию БД для каждого теста с откатом транзакции."""
    connection = test_engine.connect()
    transaction = connection.begin()
    Session = sessionmaker(bind=connection)
    session = Session()

    yield session

    # Откатываем транзакцию после теста — данные не сохраняются
    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def client(db_session):
    """Переопределяет зависимость get_db для использования тестовой сессии."""

    def override_get_db():
        return db_session

    app.dependency_overrides[database.get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def host_token(client):
    """Регистрирует хоста и возвращает его токен."""
    client.post(
        "/users",
        json={"email": "host@example.com", "full_name": "Host", "password": "password"},
    )
    response = client.post(
        "/auth/login", json={"email": "host@example.com", "password": "password"}
    )
    assert response.status_code == 200
    return response.json()["access_token"]


@pytest.fixture
def create_session(client, host_token):
    """Фабрика: создаёт сессию с фичами от имени хоста."""

    def _create(features=None, project_name="Roadmap Q3", title=None):
        if features is None:
            features = [
                {"title": "Dark mode", "effort": 3, "impact": 7},
                {"title": "SSO login", "effort": 8, "impact": 9},
                {"title": "CSV import"},
            ]
        body = {"project_name": project_name, "features": features}
        if title is not None:
            body["title"] = title
        response = client.post(
            "/sessions",
            json=body,
            headers={"Authorization": f"Bearer {host_token}"},
        )
        assert response.status_code == 200
        return response.json()

    return _create
