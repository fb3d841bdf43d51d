"""create member, agreement versions and consent ledger tables

Revision ID: 3d7a9c21b0e4
Revises:
Create Date: 2026-10-17 09:30:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "3d7a9c21b0e4"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "member",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=120), nullable=False),
        sa.Column("display_name", sa.String(length=100), nullable=True),
        sa.Column("has_accepted_organiser_agreement", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("organiser_agreement_accepted_at", sa.DateTime(), nullable=True),
        sa.Column("has_accepted_user_agreement", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("user_agreement_accepted_at", sa.DateTime(), nullable=True),
        sa.Column("is_organiser", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("email", name="uq_member_email"),
    )

    op.create_table(
        "agreement_versions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("agreement_type", sa.String(length=50), nullable=False),
        sa.Column("version", sa.String(length=32), nullable=False),
        sa.Column("effective_date", sa.DateTime(), nullable=False),
        sa.Column("expiry_date", sa.DateTime(), nullable=True),
        sa.Column("agreement_text", sa.Text(), nullable=False),
        sa.Column("agreement_hash", sa.String(length=71), nullable=False),
        sa.Column("created_by", sa.String(length=100), nullable=True),
        sa.Column("change_description", sa.String(length=500), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("agreement_type", "version", name="uq_agreement_versions_type_version"),
    )
    op.create_index("ix_agreement_versions_agreement_hash", "agreement_versions", ["agreement_hash"])
    op.create_index(
        "ix_agreement_versions_type_effective",
        "agreement_versions",
        ["agreement_type", sa.text("effective_date DESC")],
    )
    op.create_index(
        "uq_agreement_versions_one_active",
        "agreement_versions",
        ["agreement_type"],
        unique=True,
        postgresql_where=sa.text("is_active = true"),
        sqlite_where=sa.text("is_active = 1"),
    )

    op.create_table(
        "legal_agreements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("member_id", sa.Integer(), sa.ForeignKey("member.id"), nullable=False),
        sa.Column("agreement_type", sa.String(length=50), nullable=False),
        sa.Column("agreement_version", sa.String(length=32), nullable=False),
        sa.Column("agreement_text", sa.Text(), nullable=False),
        sa.Column("agreement_hash", sa.String(length=71), nullable=False),
        sa.Column("accepted_at", sa.DateTime(), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("consent_method", sa.String(length=32), nullable=False, server_default=sa.text("'web_form'")),
        sa.Column("session_id", sa.String(length=128), nullable=True),
        sa.Column("referrer_url", sa.String(length=2048), nullable=True),
        sa.Column("browser_fingerprint", sa.String(length=256), nullable=True),
        sa.Column("record_kind", sa.String(length=16), nullable=False, server_default=sa.text("'acceptance'")),
        sa.Column("withdraws_record_id", sa.Integer(), sa.ForeignKey("legal_agreements.id"), nullable=True),
        sa.Column("is_withdrawn", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("withdrawn_at", sa.DateTime(), nullable=True),
        sa.Column("withdrawal_reason", sa.String(length=1000), nullable=True),
    )
    op.create_index(
        "ix_legal_agreements_member_accepted",
        "legal_agreements",
        ["member_id", sa.text("accepted_at DESC")],
    )
    op.create_index(
        "ix_legal_agreements_member_type_version",
        "legal_agreements",
        ["member_id", "agreement_type", "agreement_version"],
    )
    op.create_index(
        "uq_legal_agreements_open_acceptance",
        "legal_agreements",
        ["member_id", "agreement_type", "agreement_version"],
        unique=True,
        postgresql_where=sa.text("is_withdrawn = false AND record_kind = 'acceptance'"),
        sqlite_where=sa.text("is_withdrawn = 0 AND record_kind = 'acceptance'"),
    )


def downgrade():
    op.drop_index("uq_legal_agreements_open_acceptance", table_name="legal_agreements")
    op.drop_index("ix_legal_agreements_member_type_version", table_name="legal_agreements")
    op.drop_index("ix_legal_agreements_member_accepted", table_name="legal_agreements")
    op.drop_table("legal_agreements")
    op.drop_index("uq_agreement_versions_one_active", table_name="agreement_versions")
    op.drop_index("ix_agreement_versions_type_effective", table_name="agreement_versions")
    op.drop_index("ix_agreement_versions_agreement_hash", table_name="agreement_versions")
    op.drop_table("agreement_versions")
    op.drop_table("member")
