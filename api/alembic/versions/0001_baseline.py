"""baseline: users, templates, certificates

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-19

Users are owned by the identity service and only read here. Templates are
versioned (composite key); certificates pin the version they render with.
"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_baseline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(255), nullable=True),
        sa.Column("last_name", sa.String(255), nullable=True),
        sa.Column(
            "role",
            sa.Enum("admin", "issuer", "holder", name="user_role", native_enum=False),
            nullable=False,
        ),
        sa.Column("is_active", sa.Boolean(), default=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    op.create_table(
        "templates",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("html", sa.Text(), nullable=False),
        sa.Column("styles", sa.JSON(), nullable=True),
        sa.Column("placeholders", sa.JSON(), nullable=True),
        sa.Column("is_default", sa.Boolean(), default=False),
        sa.Column("created_by_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", "version"),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"]),
    )
    op.create_index("ix_templates_default", "templates", ["is_default"])

    op.create_table(
        "certificates",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("serial_number", sa.String(32), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("issuer_id", sa.String(64), nullable=False),
        sa.Column("recipient_id", sa.String(64), nullable=False),
        sa.Column("issuer_name", sa.String(255), nullable=False),
        sa.Column("recipient_name", sa.String(255), nullable=False),
        sa.Column("recipient_email", sa.String(255), nullable=False),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("pdf_url", sa.Text(), nullable=True),
        sa.Column("issue_date", sa.Date(), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "draft",
                "issued",
                "revoked",
                name="certificate_status",
                native_enum=False,
            ),
            nullable=False,
        ),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("template_id", sa.String(64), nullable=False),
        sa.Column("template_version", sa.Integer(), nullable=False),
        sa.Column("fingerprint", sa.String(128), nullable=False),
        sa.Column("hash_algorithm", sa.String(32), nullable=False),
        sa.Column(
            "anchor_state",
            sa.Enum(
                "unanchored",
                "pending_retry",
                "anchored",
                name="anchor_state",
                native_enum=False,
            ),
            nullable=False,
        ),
        sa.Column("blockchain_hash", sa.String(255), nullable=True),
        sa.Column("anchored_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("anchor_attempts", sa.Integer(), nullable=True),
        sa.Column("next_anchor_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revocation_reason", sa.Text(), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_by_id", sa.String(64), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("serial_number", name="uq_certificates_serial_number"),
        sa.ForeignKeyConstraint(["issuer_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["recipient_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["revoked_by_id"], ["users.id"]),
        sa.ForeignKeyConstraint(
            ["template_id", "template_version"],
            ["templates.id", "templates.version"],
            name="fk_certificates_template_version",
        ),
        sa.CheckConstraint(
            "expiry_date IS NULL OR expiry_date >= issue_date",
            name="ck_certificates_expiry_after_issue",
        ),
    )
    op.create_index("ix_certificates_recipient", "certificates", ["recipient_id"])
    op.create_index("ix_certificates_issuer", "certificates", ["issuer_id"])
    op.create_index(
        "ix_certificates_anchor_due",
        "certificates",
        ["anchor_state", "next_anchor_attempt_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_certificates_anchor_due", table_name="certificates")
    op.drop_index("ix_certificates_issuer", table_name="certificates")
    op.drop_index("ix_certificates_recipient", table_name="certificates")
    op.drop_table("certificates")
    op.drop_index("ix_templates_default", table_name="templates")
    op.drop_table("templates")
    op.drop_table("users")
