"""Identity schema: organisations, users, role catalog and memberships, invitations, audit.

Revision ID: 0001_identity_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001_identity_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


# ---------------------------------------------------------------------------
# UPGRADE
# ---------------------------------------------------------------------------


def upgrade() -> None:
    op.create_table(
        "organisation",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("slug", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("logo_url", sa.Text(), nullable=True),
        sa.Column("website", sa.Text(), nullable=True),
        sa.Column("public_profile", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("client_id", sa.Text(), nullable=True),
        sa.Column("client_secret", sa.Text(), nullable=True),
        sa.Column("idp_id", sa.Text(), nullable=True),
        sa.Column("primary_did", sa.Text(), nullable=True),
        sa.Column("did_namespace", sa.Text(), nullable=True),
        sa.Column("created_by", UUID, nullable=True),
        sa.Column("last_changed_by", UUID, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_organisation_name", "organisation", ["name"], unique=True)
    op.create_index("ix_organisation_slug", "organisation", ["slug"], unique=True)
    op.create_index("ix_organisation_client_id", "organisation", ["client_id"])

    op.create_table(
        "user",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("username", sa.Text(), nullable=True),
        sa.Column("first_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=True),
        sa.Column("profile_img", sa.Text(), nullable=True),
        sa.Column("public_profile", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("verification_code", sa.Text(), nullable=True),
        sa.Column("keycloak_user_id", sa.Text(), nullable=True),
        sa.Column("client_id", sa.Text(), nullable=True),
        sa.Column("client_secret", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_user_email", "user", ["email"], unique=True)
    op.create_index("ix_user_username", "user", ["username"], unique=True)
    op.create_index("ix_user_keycloak_user_id", "user", ["keycloak_user_id"])

    op.create_table(
        "org_roles",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        *_timestamps(),
    )
    op.create_index("ix_org_roles_name", "org_roles", ["name"], unique=True)

    op.create_table(
        "user_org_roles",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, sa.ForeignKey("user.id"), nullable=False),
        sa.Column("org_id", UUID, sa.ForeignKey("organisation.id"), nullable=True),
        sa.Column("org_role_id", UUID, sa.ForeignKey("org_roles.id"), nullable=False),
        sa.Column("idp_role_id", sa.Text(), nullable=True),
        sa.UniqueConstraint("user_id", "org_id", "org_role_id", name="uq_user_org_role"),
    )
    op.create_index("ix_user_org_roles_user_id", "user_org_roles", ["user_id"])
    op.create_index("ix_user_org_roles_org_id", "user_org_roles", ["org_id"])

    op.create_table(
        "org_invitations",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("org_id", UUID, sa.ForeignKey("organisation.id"), nullable=False),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("org_roles", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("created_by", UUID, sa.ForeignKey("user.id"), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("status IN ('pending', 'accepted', 'rejected')", name="ck_invitation_status"),
    )
    op.create_index("ix_org_invitations_org_id", "org_invitations", ["org_id"])
    op.create_index("ix_org_invitations_email", "org_invitations", ["email"])

    op.create_table(
        "org_dids",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("org_id", UUID, sa.ForeignKey("organisation.id"), nullable=False),
        sa.Column("did", sa.Text(), nullable=False),
        sa.Column("is_primary_did", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("did_document", postgresql.JSONB(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_org_dids_org_id", "org_dids", ["org_id"])
    op.create_index("ix_org_dids_did", "org_dids", ["did"])
    # At most one primary DID per organisation
    op.execute(
        "CREATE UNIQUE INDEX uq_org_dids_primary ON org_dids (org_id) WHERE is_primary_did"
    )

    op.create_table(
        "notification",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("org_id", UUID, sa.ForeignKey("organisation.id"), nullable=False),
        sa.Column("webhook_endpoint", sa.Text(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_notification_org_id", "notification", ["org_id"])

    op.create_table(
        "user_activity",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, sa.ForeignKey("user.id"), nullable=False),
        sa.Column("org_id", UUID, sa.ForeignKey("organisation.id"), nullable=True),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("details", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_user_activity_user_id", "user_activity", ["user_id"])
    op.create_index("ix_user_activity_org_id", "user_activity", ["org_id"])

    # No foreign keys: records outlive the organisation they describe
    op.create_table(
        "org_deletion_records",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("org_id", UUID, nullable=False),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("deleted_by", UUID, nullable=False),
        sa.Column("record_type", sa.Text(), nullable=False),
        sa.Column("user_email", sa.Text(), nullable=False),
        sa.Column("txn_metadata", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_org_deletion_records_org_id", "org_deletion_records", ["org_id"])

    op.create_table(
        "platform_config",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("email_from", sa.Text(), nullable=True),
        sa.Column("platform_name", sa.Text(), nullable=True),
        sa.Column("brand_logo_url", sa.Text(), nullable=True),
        sa.Column("support_email", sa.Text(), nullable=True),
        sa.Column("api_endpoint", sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "token",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, sa.ForeignKey("user.id"), nullable=False),
        sa.Column("token", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_token_user_id", "token", ["user_id"])
    op.create_index("ix_token_token", "token", ["token"], unique=True)


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    for table in (
        "token",
        "platform_config",
        "org_deletion_records",
        "user_activity",
        "notification",
        "org_dids",
        "org_invitations",
        "user_org_roles",
        "org_roles",
        "user",
        "organisation",
    ):
        op.drop_table(table)
