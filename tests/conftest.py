import cv2
import numpy as np
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db import init_db
from models import (
    Organization,
    Verification,
    VerificationBehavior,
    VerificationPii,
    VerificationStatus,
    WebhookConfig,
)


@pytest.fixture(autouse=True)
def no_network_calls(monkeypatch):
    """Block all external requests (safety)."""
    def blocked(*a, **kw):
        raise RuntimeError("NETWORK CALL BLOCKED IN TEST")

    monkeypatch.setattr("requests.post", blocked)
    monkeypatch.setattr("requests.get", blocked)
    monkeypatch.setattr("requests.put", blocked)
    monkeypatch.setattr("requests.delete", blocked)
    yield


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_db(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, future=True)
    engine.dispose()


@pytest.fixture
def make_verification(session_factory):
    """
    Create an organization + verification (+ PII, behavior, webhook config).
    Returns the verification id.
    """
    def _make(
        status=VerificationStatus.PROCESSING,
        id_type="passport",
        document_images=None,
        rules=None,
        behavior=None,
        webhook=None,
        organization_id=None,
        **pii_fields,
    ):
        with session_factory() as session, session.begin():
            org = session.get(Organization, organization_id) if organization_id else None
            if org is None:
                org = Organization(name="Acme", verification_rules=rules)
                if organization_id:
                    org.id = organization_id
                session.add(org)
                session.flush()

            verification = Verification(organization_id=org.id, id_type=id_type, status=status.value)
            session.add(verification)
            session.flush()

            if document_images is not None or pii_fields:
                session.add(VerificationPii(
                    verification_id=verification.id,
                    document_images=document_images,
                    **pii_fields,
                ))
            if behavior is not None:
                session.add(VerificationBehavior(verification_id=verification.id, signals=behavior))
            if webhook is not None:
                session.add(WebhookConfig(organization_id=org.id, **webhook))
            return verification.id

    return _make


@pytest.fixture
def noise_jpeg():
    """Sharp 800x600 JPEG that passes the template, tampering and quality rules."""
    rng = np.random.default_rng(0)
    img = rng.integers(0, 256, size=(600, 800, 3), dtype=np.uint8)
    ok, buf = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, 90])
    assert ok
    return buf.tobytes()
