import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-the-billing-suite")

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.security import create_access_token
from app.core.settings import settings
from app.db.session import get_db
from app.deps import jwt_secret
from app.main import app
from app.models import (
    Base,
    Bono,
    CareRelationship,
    Center,
    Role,
    SessionStatus,
    TherapySession,
    User,
)


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(session_factory):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _user(db, **fields) -> User:
    user = User(**fields)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture()
def psychologist(db):
    return _user(
        db,
        email="ana@example.com",
        full_name="Ana Ruiz",
        first_name="Ana",
        last_name="Ruiz",
        role=Role.psychologist,
        dni="12345678Z",
        address="Calle Mayor 1",
        city="Madrid",
        postal_code="28013",
        country="España",
    )


@pytest.fixture()
def other_psychologist(db):
    return _user(db, email="luis@example.com", full_name="Luis Gil", role=Role.psychologist)


@pytest.fixture()
def center(db, psychologist):
    center = Center(
        psychologist_user_id=psychologist.id,
        center_name="Centro Salud Mental Norte",
        cif="B12345678",
        address="Avenida Norte 5",
        city="Madrid",
        postal_code="28034",
    )
    db.add(center)
    db.commit()
    db.refresh(center)
    return center


@pytest.fixture()
def patient(db, psychologist):
    patient = _user(
        db,
        email="marta@example.com",
        full_name="Marta López",
        first_name="Marta",
        last_name="López",
        role=Role.patient,
        dni="87654321X",
    )
    db.add(
        CareRelationship(
            psychologist_user_id=psychologist.id,
            patient_user_id=patient.id,
            default_session_price=60,
            default_percent_psych=75,
        )
    )
    db.commit()
    return patient


@pytest.fixture()
def center_patient(db, psychologist, center):
    patient = _user(db, email="pablo@example.com", full_name="Pablo Sanz", role=Role.patient)
    db.add(
        CareRelationship(
            psychologist_user_id=psychologist.id,
            patient_user_id=patient.id,
            center_id=center.id,
        )
    )
    db.commit()
    return patient


def bearer(user: User) -> dict[str, str]:
    token = create_access_token(
        subject=str(user.id),
        secret=jwt_secret(),
        alg=settings.jwt_alg,
        expires_minutes=60,
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def auth_headers(psychologist):
    return bearer(psychologist)


@pytest.fixture()
def make_session(db, psychologist):
    start = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)

    def _make(patient, *, status=SessionStatus.completed, hours=1.0, price=60, **fields):
        starts_on = fields.pop("starts_on", start)
        session = TherapySession(
            psychologist_user_id=fields.pop("psychologist_user_id", psychologist.id),
            patient_user_id=patient.id if patient else None,
            starts_on=starts_on,
            ends_on=starts_on + timedelta(hours=hours),
            price=price,
            percent_psych=fields.pop("percent_psych", 75),
            status=status,
            **fields,
        )
        db.add(session)
        db.commit()
        db.refresh(session)
        return session

    return _make


@pytest.fixture()
def make_bono(db, psychologist):
    def _make(patient, *, total=10, price=500, **fields):
        bono = Bono(
            psychologist_user_id=fields.pop("psychologist_user_id", psychologist.id),
            patient_user_id=patient.id,
            total_sessions_amount=total,
            total_price_bono_amount=price,
            **fields,
        )
        db.add(bono)
        db.commit()
        db.refresh(bono)
        return bono

    return _make


@pytest.fixture()
def headers_for():
    return bearer
