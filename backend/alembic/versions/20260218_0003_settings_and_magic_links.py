"""Create app settings and SMS magic link tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20260218_0003"
down_revision = "20260218_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "app_settings",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("key", sa.String(length=128), nullable=False),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "key", name="uq_app_settings_user_key"),
    )
    op.create_index("ix_app_settings_user_id", "app_settings", ["user_id"], unique=False)

    op.create_table(
        "magic_links",
        sa.Column("token", sa.String(length=64), nullable=False),
        sa.Column("conversation_id", sa.String(length=64), nullable=False),
        sa.Column("message_content", sa.Text(), nullable=False),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("token"),
    )
    op.create_index("ix_magic_links_conversation_id", "magic_links", ["conversation_id"], unique=False)
    op.create_index("ix_magic_links_expires_at", "magic_links", ["expires_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_magic_links_expires_at", table_name="magic_links")
    op.drop_index("ix_magic_links_conversation_id", table_name="magic_links")
    op.drop_table("magic_links")

    op.drop_index("ix_app_settings_user_id", table_name="app_settings")
    op.drop_table("app_settings")
