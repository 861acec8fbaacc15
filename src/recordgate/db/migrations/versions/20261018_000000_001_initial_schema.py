"""Initial schema for the disclosure workflow.

Revision ID: 001
Revises: None
Create Date: 2026-10-18 00:00:00.000000+00:00

Creates:
- allocations (company/subject allocations)
- disclosure_requests (request lifecycle)
- grants (per-record grants with quota and expiry)
- audit_events (append-only audit trail)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Apply migration: Initial schema for the disclosure workflow."""
    allocation_status = postgresql.ENUM(
        "pending", "approved", "rejected", name="allocation_status", create_type=False
    )
    allocation_status.create(op.get_bind(), checkfirst=True)

    request_status = postgresql.ENUM(
        "pending", "approved", "rejected", "fulfilled", name="request_status", create_type=False
    )
    request_status.create(op.get_bind(), checkfirst=True)

    request_urgency = postgresql.ENUM(
        "low", "medium", "high", name="request_urgency", create_type=False
    )
    request_urgency.create(op.get_bind(), checkfirst=True)

    audit_severity = postgresql.ENUM(
        "info", "warning", "error", "critical", name="audit_severity", create_type=False
    )
    audit_severity.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "allocations",
        sa.Column("allocation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("company_id", sa.String(255), nullable=False),
        sa.Column("subject_id", sa.String(255), nullable=False),
        sa.Column("policy_ref", sa.String(100), nullable=False),
        sa.Column("coverage_start", sa.Date(), nullable=True),
        sa.Column("coverage_end", sa.Date(), nullable=True),
        sa.Column("status", allocation_status, nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(255), nullable=False),
        sa.Column("decided_by", sa.String(255), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("allocation_id", name=op.f("pk_allocations")),
        sa.UniqueConstraint(
            "company_id",
            "subject_id",
            "policy_ref",
            name="uq_allocations_company_subject_policy",
        ),
    )
    op.create_index(
        "ix_allocations_company_subject_status",
        "allocations",
        ["company_id", "subject_id", "status"],
        unique=False,
    )

    op.create_table(
        "disclosure_requests",
        sa.Column("request_id", sa.String(32), nullable=False),
        sa.Column("allocation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("company_id", sa.String(255), nullable=False),
        sa.Column("subject_id", sa.String(255), nullable=False),
        sa.Column("purpose", sa.Text(), nullable=False),
        # Requested scope
        sa.Column("record_types", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("date_from", sa.Date(), nullable=True),
        sa.Column("date_to", sa.Date(), nullable=True),
        sa.Column("urgency", request_urgency, nullable=False),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("status", request_status, nullable=False),
        sa.Column(
            "submitted_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("submitted_by", sa.String(255), nullable=False),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed_by", sa.String(255), nullable=True),
        sa.Column("response_notes", sa.Text(), nullable=True),
        sa.Column("expiry_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["allocation_id"],
            ["allocations.allocation_id"],
            name=op.f("fk_disclosure_requests_allocation_id_allocations"),
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("request_id", name=op.f("pk_disclosure_requests")),
    )
    op.create_index(
        "ix_disclosure_requests_company_status",
        "disclosure_requests",
        ["company_id", "status"],
        unique=False,
    )
    op.create_index(
        "ix_disclosure_requests_subject", "disclosure_requests", ["subject_id"], unique=False
    )
    op.create_index(
        "ix_disclosure_requests_submitted_at",
        "disclosure_requests",
        ["submitted_at"],
        unique=False,
    )

    op.create_table(
        "grants",
        sa.Column("grant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("request_id", sa.String(32), nullable=False),
        sa.Column("record_id", sa.String(255), nullable=False),
        sa.Column("approved_by", sa.String(255), nullable=False),
        sa.Column("granted_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("access_count", sa.Integer(), nullable=False),
        sa.Column("max_access_count", sa.Integer(), nullable=False),
        sa.Column("last_accessed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "access_count <= max_access_count", name=op.f("ck_grants_access_within_quota")
        ),
        sa.CheckConstraint("max_access_count >= 1", name=op.f("ck_grants_quota_positive")),
        sa.CheckConstraint("access_count >= 0", name=op.f("ck_grants_access_non_negative")),
        sa.ForeignKeyConstraint(
            ["request_id"],
            ["disclosure_requests.request_id"],
            name=op.f("fk_grants_request_id_disclosure_requests"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("grant_id", name=op.f("pk_grants")),
        sa.UniqueConstraint("request_id", "record_id", name="uq_grants_request_record"),
    )
    op.create_index("ix_grants_request", "grants", ["request_id"], unique=False)

    op.create_table(
        "audit_events",
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("actor_id", sa.String(255), nullable=False),
        sa.Column("actor_role", sa.String(50), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("resource_type", sa.String(50), nullable=False),
        sa.Column("resource_id", sa.String(255), nullable=False),
        sa.Column("before", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("after", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("severity", audit_severity, nullable=False),
        sa.PrimaryKeyConstraint("event_id", name=op.f("pk_audit_events")),
    )
    op.create_index(
        "ix_audit_events_resource",
        "audit_events",
        ["resource_type", "resource_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_audit_events_actor", "audit_events", ["actor_id", "created_at"], unique=False
    )


def downgrade() -> None:
    """Revert migration: Initial schema for the disclosure workflow."""
    # Drop tables in reverse order (respecting foreign key dependencies)
    op.drop_table("audit_events")
    op.drop_table("grants")
    op.drop_table("disclosure_requests")
    op.drop_table("allocations")

    op.execute("DROP TYPE IF EXISTS audit_severity")
    op.execute("DROP TYPE IF EXISTS request_urgency")
    op.execute("DROP TYPE IF EXISTS request_status")
    op.execute("DROP TYPE IF EXISTS allocation_status")
