from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "channels",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("channel_id", sa.String(), nullable=False),
        sa.Column("channel_secret", sa.String(), nullable=False),
        sa.Column("channel_access_token", sa.Text(), nullable=False),
        sa.Column("default_rich_menu_id", sa.Integer(), nullable=True),
        sa.Column("auto_tag_ids", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("forward_webhook_url", sa.String(), nullable=True),
        sa.Column("access_password_hash", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("channel_id"),
    )

    op.create_table(
        "rich_menus",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("channel_id", sa.Integer(), nullable=False),
        sa.Column("rich_menu_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("chat_bar_text", sa.String(), nullable=False, server_default="Menu"),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("areas", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("display_period_start", sa.DateTime(), nullable=True),
        sa.Column("display_period_end", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["channel_id"], ["channels.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_rich_menus_window",
        "rich_menus",
        ["channel_id", "display_period_start", "display_period_end"],
        unique=False,
    )
    op.create_index(
        "uq_rich_menus_default",
        "rich_menus",
        ["channel_id"],
        unique=True,
        postgresql_where=sa.text("is_default"),
        sqlite_where=sa.text("is_default = 1"),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("channel_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("color", sa.String(), nullable=False, server_default="#3B82F6"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("linked_rich_menu_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["channel_id"], ["channels.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["linked_rich_menu_id"], ["rich_menus.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("uq_tags_channel_name", "tags", ["channel_id", "name"], unique=True)

    op.create_table(
        "line_users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("channel_id", sa.Integer(), nullable=False),
        sa.Column("line_user_id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("internal_name", sa.String(), nullable=True),
        sa.Column("picture_url", sa.Text(), nullable=True),
        sa.Column("status_message", sa.Text(), nullable=True),
        sa.Column("is_blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("current_rich_menu_id", sa.Integer(), nullable=True),
        sa.Column("last_message_at", sa.DateTime(), nullable=True),
        sa.Column("last_message_content", sa.Text(), nullable=True),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("followed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["channel_id"], ["channels.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["current_rich_menu_id"], ["rich_menus.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("uq_line_users_channel_user", "line_users", ["channel_id", "line_user_id"], unique=True)
    op.create_index("idx_line_users_delivery", "line_users", ["channel_id", "is_blocked"], unique=False)

    op.create_table(
        "line_user_tags",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("line_user_id", sa.Integer(), nullable=False),
        sa.Column("tag_id", sa.Integer(), nullable=False),
        sa.Column("assigned_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["line_user_id"], ["line_users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["tag_id"], ["tags.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("uq_line_user_tags", "line_user_tags", ["line_user_id", "tag_id"], unique=True)
    op.create_index("idx_line_user_tags_tag", "line_user_tags", ["tag_id"], unique=False)

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("channel_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(), nullable=False, server_default=""),
        sa.Column("content", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("status", sa.String(), nullable=False, server_default="draft"),
        sa.Column("filter_tag_ids", sa.Text(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("total_recipients", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["channel_id"], ["channels.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_messages_due", "messages", ["status", "scheduled_at"], unique=False)

    op.create_table(
        "step_scenarios",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("channel_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("trigger_type", sa.String(), nullable=False, server_default="follow"),
        sa.Column("trigger_tag_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["channel_id"], ["channels.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["trigger_tag_id"], ["tags.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_step_scenarios_trigger",
        "step_scenarios",
        ["channel_id", "trigger_type", "is_active"],
        unique=False,
    )

    op.create_table(
        "step_messages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("scenario_id", sa.Integer(), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("delay_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("send_hour", sa.Integer(), nullable=True),
        sa.Column("send_minute", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("content", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["scenario_id"], ["step_scenarios.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("uq_step_messages_order", "step_messages", ["scenario_id", "step_order"], unique=True)

    op.create_table(
        "step_executions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("scenario_id", sa.Integer(), nullable=False),
        sa.Column("line_user_id", sa.Integer(), nullable=False),
        sa.Column("current_step", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("next_send_at", sa.DateTime(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["scenario_id"], ["step_scenarios.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["line_user_id"], ["line_users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_step_executions_due", "step_executions", ["status", "next_send_at"], unique=False)
    # at most one active run per (scenario, user)
    op.create_index(
        "uq_step_executions_active",
        "step_executions",
        ["scenario_id", "line_user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "chat_messages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("channel_id", sa.Integer(), nullable=False),
        sa.Column("line_user_id", sa.Integer(), nullable=False),
        sa.Column("sender", sa.String(), nullable=False),
        sa.Column("content_type", sa.String(), nullable=False, server_default="text"),
        sa.Column("content", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("read_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["channel_id"], ["channels.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["line_user_id"], ["line_users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_chat_messages_user", "chat_messages", ["line_user_id", "created_at"], unique=False)

    op.create_table(
        "activity_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("channel_id", sa.Integer(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("target_type", sa.String(), nullable=True),
        sa.Column("target_id", sa.String(), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["channel_id"], ["channels.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_activity_logs_channel", "activity_logs", ["channel_id", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_activity_logs_channel", table_name="activity_logs")
    op.drop_table("activity_logs")

    op.drop_index("idx_chat_messages_user", table_name="chat_messages")
    op.drop_table("chat_messages")

    op.drop_index("uq_step_executions_active", table_name="step_executions")
    op.drop_index("idx_step_executions_due", table_name="step_executions")
    op.drop_table("step_executions")

    op.drop_index("uq_step_messages_order", table_name="step_messages")
    op.drop_table("step_messages")

    op.drop_index("idx_step_scenarios_trigger", table_name="step_scenarios")
    op.drop_table("step_scenarios")

    op.drop_index("idx_messages_due", table_name="messages")
    op.drop_table("messages")

    op.drop_index("idx_line_user_tags_tag", table_name="line_user_tags")
    op.drop_index("uq_line_user_tags", table_name="line_user_tags")
    op.drop_table("line_user_tags")

    op.drop_index("idx_line_users_delivery", table_name="line_users")
    op.drop_index("uq_line_users_channel_user", table_name="line_users")
    op.drop_table("line_users")

    op.drop_index("uq_tags_channel_name", table_name="tags")
    op.drop_table("tags")

    op.drop_index("uq_rich_menus_default", table_name="rich_menus")
    op.drop_index("idx_rich_menus_window", table_name="rich_menus")
    op.drop_table("rich_menus")

    op.drop_table("channels")
