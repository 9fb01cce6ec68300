"""Communication channel schema: accounts, users, logins, channels, notification policies.

Applied to every shard.

Revision ID: 0001_communication_channels
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001_communication_channels"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    # accounts
    op.create_table(
        "accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("settings", postgresql.JSONB(), nullable=False, server_default="{}"),
        *_timestamps(),
    )
    op.create_index("idx_accounts_name", "accounts", ["name"])

    # users
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("workflow_state", sa.Text(), nullable=False, server_default="registered"),
        sa.Column("otp_communication_channel_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("has_bouncing_channel", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )

    # user_accounts
    op.create_table(
        "user_accounts",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True),
    )

    # logins
    op.create_table(
        "logins",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("unique_id", sa.Text(), nullable=False),
        sa.Column("workflow_state", sa.Text(), nullable=False, server_default="active"),
        *_timestamps(),
    )
    op.create_index("idx_logins_user", "logins", ["user_id"])
    op.create_index("idx_logins_account", "logins", ["account_id"])

    # communication_channels
    op.create_table(
        "communication_channels",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("path", sa.Text(), nullable=False),
        sa.Column("path_type", sa.Text(), nullable=False, server_default="email"),
        sa.Column("workflow_state", sa.Text(), nullable=False, server_default="unconfirmed"),
        sa.Column("position", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("confirmation_code", sa.Text(), nullable=True),
        sa.Column("confirmation_code_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmation_sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bounce_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_bounce_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_bounce_details", postgresql.JSONB(), nullable=True),
        sa.Column("last_transient_bounce_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_transient_bounce_details", postgresql.JSONB(), nullable=True),
        sa.Column("last_suppression_bounce_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("bounce_recorded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transient_bounce_recorded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("suppression_bounce_recorded_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_communication_channels_user", "communication_channels", ["user_id", "position"])
    op.create_index("idx_communication_channels_code", "communication_channels", ["confirmation_code"])
    # Bounce fan-out and merge-candidate lookups match on lower(path)
    op.execute(
        "CREATE INDEX idx_communication_channels_path "
        "ON communication_channels (lower(path), path_type)"
    )
    # One live channel per user, path and path-type group (personal_email counts as email)
    op.execute(
        "CREATE UNIQUE INDEX idx_communication_channels_unique_path "
        "ON communication_channels (user_id, lower(path), "
        "(CASE WHEN path_type IN ('email', 'personal_email') THEN 'email' ELSE path_type END)) "
        "WHERE workflow_state IN ('unconfirmed', 'active')"
    )

    # notification_policies
    op.create_table(
        "notification_policies",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "communication_channel_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("communication_channels.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("category", sa.Text(), nullable=False),
        sa.Column("frequency", sa.Text(), nullable=False),
        *_timestamps(),
    )
    op.create_index("idx_notification_policies_channel", "notification_policies", ["communication_channel_id"])


def downgrade() -> None:
    op.drop_table("notification_policies")
    op.execute("DROP INDEX IF EXISTS idx_communication_channels_unique_path")
    op.execute("DROP INDEX IF EXISTS idx_communication_channels_path")
    op.drop_table("communication_channels")
    op.drop_table("logins")
    op.drop_table("user_accounts")
    op.drop_table("users")
    op.drop_table("accounts")
