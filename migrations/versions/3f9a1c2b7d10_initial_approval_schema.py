"""initial approval workflow schema

Revision ID: 3f9a1c2b7d10
Revises:
Create Date: 2026-10-16 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "3f9a1c2b7d10"
down_revision = None
branch_labels = None
depends_on = None

JSONB = postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    op.create_table(
        "organisations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("ref", sa.String(50), nullable=False),
        sa.Column("base_currency", sa.String(3), nullable=True),
        sa.Column("status", sa.String(20), nullable=True),
        sa.Column("settings", JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("ref"),
    )
    op.create_index("idx_organisations_ref", "organisations", ["ref"])
    op.create_index("idx_organisations_status", "organisations", ["status"])

    op.create_table(
        "branches",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organisation_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("status", sa.String(20), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["organisation_id"], ["organisations.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_branches_organisation", "branches", ["organisation_id"])

    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organisation_id", sa.Uuid(), nullable=False),
        sa.Column("branch_id", sa.Uuid(), nullable=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["organisation_id"], ["organisations.id"]),
        sa.ForeignKeyConstraint(["branch_id"], ["branches.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("idx_users_organisation", "users", ["organisation_id"])
    op.create_index("idx_users_branch", "users", ["branch_id"])
    op.create_index("idx_users_role", "users", ["role"])

    op.create_table(
        "fx_rates",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organisation_id", sa.Uuid(), nullable=False),
        sa.Column("from_currency", sa.String(3), nullable=False),
        sa.Column("to_currency", sa.String(3), nullable=False),
        sa.Column("rate", sa.Numeric(20, 6), nullable=False),
        sa.Column("effective_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["organisation_id"], ["organisations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "organisation_id", "from_currency", "to_currency", "effective_date",
            name="uq_fx_rate_org_pair_date",
        ),
        sa.CheckConstraint("rate > 0", name="ck_fx_rates_rate_positive"),
    )
    op.create_index(
        "idx_fx_rates_lookup",
        "fx_rates",
        ["organisation_id", "from_currency", "to_currency", "effective_date"],
    )

    op.create_table(
        "approvals",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("approval_reference", sa.String(50), nullable=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("priority", sa.String(20), nullable=True),
        sa.Column("flow_type", sa.String(50), nullable=True),
        sa.Column("entity_type", sa.String(100), nullable=True),
        sa.Column("entity_id", sa.String(100), nullable=True),
        sa.Column("entity_data", JSONB, nullable=True),
        sa.Column("status", sa.String(50), nullable=True),
        sa.Column("current_step", sa.Integer(), nullable=True),
        sa.Column("total_steps", sa.Integer(), nullable=True),
        sa.Column("approved_count", sa.Integer(), nullable=True),
        sa.Column("rejected_count", sa.Integer(), nullable=True),
        sa.Column("requester_id", sa.Uuid(), nullable=False),
        sa.Column("approver_id", sa.Uuid(), nullable=True),
        sa.Column("delegated_from_id", sa.Uuid(), nullable=True),
        sa.Column("delegated_to_id", sa.Uuid(), nullable=True),
        sa.Column("escalated_to_id", sa.Uuid(), nullable=True),
        sa.Column("organisation_id", sa.Uuid(), nullable=False),
        sa.Column("branch_id", sa.Uuid(), nullable=True),
        sa.Column("deadline", sa.DateTime(), nullable=True),
        sa.Column("is_overdue", sa.Boolean(), nullable=True),
        sa.Column("is_urgent", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("rejected_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("signed_at", sa.DateTime(), nullable=True),
        sa.Column("approval_comments", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("conditions", sa.Text(), nullable=True),
        sa.Column("amount", sa.Numeric(15, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("supporting_documents", JSONB, nullable=True),
        sa.Column("attachments", JSONB, nullable=True),
        sa.Column("requires_signature", sa.Boolean(), nullable=True),
        sa.Column("is_signed", sa.Boolean(), nullable=True),
        sa.Column("signature_type", sa.String(20), nullable=True),
        sa.Column("signature_url", sa.Text(), nullable=True),
        sa.Column("signature_metadata", JSONB, nullable=True),
        sa.Column("is_escalated", sa.Boolean(), nullable=True),
        sa.Column("escalated_at", sa.DateTime(), nullable=True),
        sa.Column("escalation_reason", sa.Text(), nullable=True),
        sa.Column("escalation_level", sa.Integer(), nullable=True),
        sa.Column("request_source", sa.String(50), nullable=True),
        sa.Column("custom_fields", JSONB, nullable=True),
        sa.Column("metadata", JSONB, nullable=True),
        sa.Column("lifecycle", sa.String(20), nullable=True),
        sa.Column("archived_at", sa.DateTime(), nullable=True),
        sa.Column("archived_by", sa.Uuid(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.CheckConstraint("version > 0", name="chk_approvals_version_positive"),
        sa.CheckConstraint("escalation_level >= 0", name="chk_approvals_escalation_level"),
        sa.ForeignKeyConstraint(["requester_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["approver_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["delegated_from_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["delegated_to_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["escalated_to_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["archived_by"], ["users.id"]),
        sa.ForeignKeyConstraint(["organisation_id"], ["organisations.id"]),
        sa.ForeignKeyConstraint(["branch_id"], ["branches.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("approval_reference"),
    )
    op.create_index("idx_approvals_org_status", "approvals", ["organisation_id", "status"])
    op.create_index("idx_approvals_requester", "approvals", ["requester_id"])
    op.create_index("idx_approvals_approver", "approvals", ["approver_id", "status"])
    op.create_index("idx_approvals_delegated_to", "approvals", ["delegated_to_id"])
    op.create_index("idx_approvals_branch", "approvals", ["branch_id"])
    op.create_index("idx_approvals_lifecycle", "approvals", ["lifecycle"])
    op.create_index("idx_approvals_deadline", "approvals", ["deadline"])
    op.execute(
        "CREATE INDEX idx_approvals_title_trgm ON approvals USING gin (title gin_trgm_ops)"
    )

    op.create_table(
        "approval_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("approval_id", sa.Uuid(), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("from_status", sa.String(50), nullable=True),
        sa.Column("to_status", sa.String(50), nullable=False),
        sa.Column("actor_id", sa.Uuid(), nullable=True),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("source", sa.String(50), nullable=True),
        sa.Column("metadata", JSONB, nullable=True),
        sa.Column("is_system_action", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["approval_id"], ["approvals.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["actor_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_approval_history_approval", "approval_history", ["approval_id", "created_at"]
    )
    op.create_index("idx_approval_history_actor", "approval_history", ["actor_id"])

    op.create_table(
        "approval_signatures",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("approval_id", sa.Uuid(), nullable=False),
        sa.Column("signer_id", sa.Uuid(), nullable=False),
        sa.Column("signature_type", sa.String(20), nullable=False),
        sa.Column("signature_url", sa.Text(), nullable=True),
        sa.Column("signature_data", sa.Text(), nullable=True),
        sa.Column("signed_at", sa.DateTime(), nullable=True),
        sa.Column("certificate_id", sa.String(255), nullable=True),
        sa.Column("certificate_issuer", sa.String(255), nullable=True),
        sa.Column("certificate_subject", sa.String(255), nullable=True),
        sa.Column("certificate_valid_from", sa.DateTime(), nullable=True),
        sa.Column("certificate_valid_to", sa.DateTime(), nullable=True),
        sa.Column("certificate_fingerprint", sa.String(255), nullable=True),
        sa.Column("signature_algorithm", sa.String(50), nullable=True),
        sa.Column("biometric_data", JSONB, nullable=True),
        sa.Column("legal_info", JSONB, nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("is_valid", sa.Boolean(), nullable=True),
        sa.Column("validated_at", sa.DateTime(), nullable=True),
        sa.Column("revoked_at", sa.DateTime(), nullable=True),
        sa.Column("revocation_reason", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["approval_id"], ["approvals.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["signer_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_approval_signatures_approval", "approval_signatures", ["approval_id"]
    )
    op.create_index("idx_approval_signatures_signer", "approval_signatures", ["signer_id"])


def downgrade() -> None:
    op.drop_table("approval_signatures")
    op.drop_table("approval_history")
    op.execute("DROP INDEX IF EXISTS idx_approvals_title_trgm")
    op.drop_table("approvals")
    op.drop_table("fx_rates")
    op.drop_table("users")
    op.drop_table("branches")
    op.drop_table("organisations")
