import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    ForeignKey,
    DateTime,
    Date,
    Text,
    JSON,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class VerificationStatus(str, enum.Enum):
    """Canonical verification lifecycle."""

    PENDING = "pending"
    DOCUMENTS_UPLOADED = "documents_uploaded"
    LIVENESS_UPLOADED = "liveness_uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


TERMINAL_STATUSES = {VerificationStatus.COMPLETED, VerificationStatus.REJECTED}
PROCESSABLE_STATUSES = {VerificationStatus.DOCUMENTS_UPLOADED, VerificationStatus.LIVENESS_UPLOADED}

# Capitalized labels still expected by integrators (webhook bodies, older
# dashboards). Only used at the boundary; never stored.
LEGACY_STATUS_LABELS = {
    VerificationStatus.PENDING: "Pending",
    VerificationStatus.DOCUMENTS_UPLOADED: "Pending",
    VerificationStatus.LIVENESS_UPLOADED: "Pending",
    VerificationStatus.PROCESSING: "Processing",
    VerificationStatus.COMPLETED: "Completed",
    VerificationStatus.REJECTED: "Rejected",
}

# Labels applied by human reviewers after a verification is terminal.
# No automated code path produces them.
REVIEW_STATUS_LABELS = ("Approved", "Rejected", "Flagged")


def legacy_status(status) -> str:
    return LEGACY_STATUS_LABELS[VerificationStatus(status)]


class RiskLevel(str, enum.Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class TimestampMixin:
    """
    Adds created_at and updated_at timestamps.
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


class Organization(Base, TimestampMixin):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Raw toggle map, parsed by pipeline.rules.OrganizationVerificationRules
    verification_rules: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    webhook_config = relationship("WebhookConfig", uselist=False, back_populates="organization")

    def __repr__(self):
        return f"<Organization id={self.id} name='{self.name}'>"


class Verification(Base, TimestampMixin):
    """
    One document-verification attempt.
    Terminal fields (match_score, risk_level, failure_reason) are written by
    the decision pipeline only.
    """

    __tablename__ = "verifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Declared document type (passport, aadhaar, pan, nric, driving_license)
    id_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=VerificationStatus.PENDING.value,
        index=True
    )

    match_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_level: Mapped[str | None] = mapped_column(String(10), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Auto-approval is disabled by policy; kept for reporting
    is_auto_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    organization = relationship("Organization")
    pii = relationship("VerificationPii", uselist=False, back_populates="verification")
    decision = relationship("VerificationDecision", uselist=False, back_populates="verification")

    def __repr__(self):
        return f"<Verification id={self.id} status={self.status} score={self.match_score}>"


class VerificationPii(Base):
    """Captured media references and OCR-derived identity fields."""

    __tablename__ = "verification_pii"

    verification_id: Mapped[str] = mapped_column(
        ForeignKey("verifications.id", ondelete="CASCADE"),
        primary_key=True
    )

    # {"document": {"ref": ...}, "liveness": {"ref": ..., "type": "video"},
    #  "liveness_frame_1": {"ref": ...}, ...}
    document_images: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    full_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    dob: Mapped[str | None] = mapped_column(String(32), nullable=True)
    id_number: Mapped[str | None] = mapped_column(Text, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    document_expiry_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    document_expired: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    extracted_fields: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # User confirmation of the extracted details
    confirmation_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    edited_fields: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    verification = relationship("Verification", back_populates="pii")


class VerificationDecision(Base, TimestampMixin):
    """At most one per verification; replaced wholesale on reprocessing."""

    __tablename__ = "verification_decisions"

    verification_id: Mapped[str] = mapped_column(
        ForeignKey("verifications.id", ondelete="CASCADE"),
        primary_key=True
    )
    provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    raw_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    checks: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    risk_signals: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    verification = relationship("Verification", back_populates="decision")


class VerificationBehavior(Base, TimestampMixin):
    """Client-side timing telemetry recorded during capture."""

    __tablename__ = "verification_behavior"

    verification_id: Mapped[str] = mapped_column(
        ForeignKey("verifications.id", ondelete="CASCADE"),
        primary_key=True
    )
    signals: Mapped[dict] = mapped_column(JSON, nullable=False)


class WebhookConfig(Base, TimestampMixin):
    """
    One delivery endpoint per organization.
    events maps config keys (verificationRejected, manualReviewRequired, ...)
    to booleans; a missing key means enabled.
    """

    __tablename__ = "webhook_configs"

    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        primary_key=True
    )
    url: Mapped[str] = mapped_column(String(1024), nullable=False)
    events: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    organization = relationship("Organization", back_populates="webhook_config")

    def __repr__(self):
        return f"<WebhookConfig org={self.organization_id} url='{self.url}'>"
