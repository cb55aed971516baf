"""Database models - schema for the LINE official account console."""
from datetime import datetime

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text, Index, text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class Channel(Base):
    """One managed LINE official account (tenant)."""
    __tablename__ = "channels"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, default="")
    channel_id = Column(String, nullable=False, unique=True)  # LINE channel id, webhook routing key
    channel_secret = Column(String, nullable=False)
    channel_access_token = Column(Text, nullable=False)

    # rich_menus.id; no FK because rich_menus references channels
    default_rich_menu_id = Column(Integer, nullable=True)
    auto_tag_ids = Column(Text, nullable=False, default="[]")  # JSON list of tags.id applied on follow
    forward_webhook_url = Column(String, nullable=True)
    access_password_hash = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    users = relationship("LineUser", back_populates="channel")
    tags = relationship("Tag", back_populates="channel")
    rich_menus = relationship("RichMenu", back_populates="channel")

    def __repr__(self):
        return f"<Channel(id={self.id}, channel_id={self.channel_id})>"


class RichMenu(Base):
    """Rich menu definition; `rich_menu_id` stays null until registered with LINE."""
    __tablename__ = "rich_menus"

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False)
    rich_menu_id = Column(String, nullable=True)
    name = Column(String, nullable=False)
    chat_bar_text = Column(String, nullable=False, default="Menu")
    image_url = Column(Text, nullable=True)
    areas = Column(Text, nullable=False, default="[]")  # JSON list of {bounds, action}
    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=False)  # currently applied due to its display window
    display_period_start = Column(DateTime, nullable=True)
    display_period_end = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    channel = relationship("Channel", back_populates="rich_menus")

    __table_args__ = (
        Index("idx_rich_menus_window", "channel_id", "display_period_start", "display_period_end"),
        Index(
            "uq_rich_menus_default",
            "channel_id",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
    )

    @property
    def is_registered(self) -> bool:
        return bool(self.rich_menu_id)

    def __repr__(self):
        return f"<RichMenu(id={self.id}, name={self.name}, rich_menu_id={self.rich_menu_id})>"


class Tag(Base):
    """Channel-scoped label; higher priority wins when several carry a linked menu."""
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    color = Column(String, nullable=False, default="#3B82F6")
    priority = Column(Integer, nullable=False, default=0)
    linked_rich_menu_id = Column(Integer, ForeignKey("rich_menus.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    channel = relationship("Channel", back_populates="tags")

    __table_args__ = (
        Index("uq_tags_channel_name", "channel_id", "name", unique=True),
    )

    def __repr__(self):
        return f"<Tag(id={self.id}, name={self.name}, priority={self.priority})>"


class LineUser(Base):
    """A LINE end user (friend) known to one channel."""
    __tablename__ = "line_users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False)
    line_user_id = Column(String, nullable=False)
    display_name = Column(String, nullable=True)
    internal_name = Column(String, nullable=True)  # operator-only label
    picture_url = Column(Text, nullable=True)
    status_message = Column(Text, nullable=True)
    is_blocked = Column(Boolean, nullable=False, default=False)
    current_rich_menu_id = Column(Integer, ForeignKey("rich_menus.id", ondelete="SET NULL"), nullable=True)

    last_message_at = Column(DateTime, nullable=True)
    last_message_content = Column(Text, nullable=True)
    unread_count = Column(Integer, nullable=False, default=0)

    followed_at = Column(DateTime, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    channel = relationship("Channel", back_populates="users")

    __table_args__ = (
        Index("uq_line_users_channel_user", "channel_id", "line_user_id", unique=True),
        Index("idx_line_users_delivery", "channel_id", "is_blocked"),
    )

    def __repr__(self):
        return f"<LineUser(id={self.id}, line_user_id={self.line_user_id}, blocked={self.is_blocked})>"


class LineUserTag(Base):
    """Tag assignment (user <-> tag)."""
    __tablename__ = "line_user_tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    line_user_id = Column(Integer, ForeignKey("line_users.id", ondelete="CASCADE"), nullable=False)
    tag_id = Column(Integer, ForeignKey("tags.id", ondelete="CASCADE"), nullable=False)
    assigned_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("uq_line_user_tags", "line_user_id", "tag_id", unique=True),
        Index("idx_line_user_tags_tag", "tag_id"),
    )


class Message(Base):
    """Broadcast campaign: content blocks + delivery accounting."""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False)
    title = Column(String, nullable=False, default="")
    content = Column(Text, nullable=False, default="[]")  # JSON list of content blocks
    status = Column(String, nullable=False, default="draft")  # draft|scheduled|sending|sent|failed
    filter_tag_ids = Column(Text, nullable=True)  # JSON list of tags.id, null/empty = everyone
    scheduled_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)

    total_recipients = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_messages_due", "status", "scheduled_at"),
    )


class StepScenario(Base):
    """Drip campaign definition."""
    __tablename__ = "step_scenarios"

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    trigger_type = Column(String, nullable=False, default="follow")  # follow|tag_assigned
    trigger_tag_id = Column(Integer, ForeignKey("tags.id", ondelete="SET NULL"), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    steps = relationship("StepMessage", back_populates="scenario", order_by="StepMessage.step_order")

    __table_args__ = (
        Index("idx_step_scenarios_trigger", "channel_id", "trigger_type", "is_active"),
    )


class StepMessage(Base):
    """A single step in a scenario."""
    __tablename__ = "step_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scenario_id = Column(Integer, ForeignKey("step_scenarios.id", ondelete="CASCADE"), nullable=False)
    step_order = Column(Integer, nullable=False, default=1)  # 1-based
    delay_minutes = Column(Integer, nullable=False, default=0)
    send_hour = Column(Integer, nullable=True)  # 0-23 in the configured send timezone
    send_minute = Column(Integer, nullable=False, default=0)
    content = Column(Text, nullable=False, default="[]")  # JSON list of content blocks

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    scenario = relationship("StepScenario", back_populates="steps")

    __table_args__ = (
        Index("uq_step_messages_order", "scenario_id", "step_order", unique=True),
    )


class StepExecution(Base):
    """One user's progress through one scenario."""
    __tablename__ = "step_executions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scenario_id = Column(Integer, ForeignKey("step_scenarios.id", ondelete="CASCADE"), nullable=False)
    line_user_id = Column(Integer, ForeignKey("line_users.id", ondelete="CASCADE"), nullable=False)
    current_step = Column(Integer, nullable=False, default=1)
    status = Column(String, nullable=False, default="active")  # active|completed
    next_send_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_step_executions_due", "status", "next_send_at"),
        Index(
            "uq_step_executions_active",
            "scenario_id",
            "line_user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


class ChatMessage(Base):
    """1:1 chat history (inbound from the user or sent by an operator)."""
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False)
    line_user_id = Column(Integer, ForeignKey("line_users.id", ondelete="CASCADE"), nullable=False)
    sender = Column(String, nullable=False)  # user|admin
    content_type = Column(String, nullable=False, default="text")
    content = Column(Text, nullable=False, default="{}")  # JSON
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_chat_messages_user", "line_user_id", "created_at"),
    )


class ActivityLog(Base):
    """Append-only audit record of operator actions."""
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False)
    actor_id = Column(String, nullable=True)
    action = Column(String, nullable=False)  # e.g. tag.create, tag.assign, rich_menu.register
    target_type = Column(String, nullable=True)
    target_id = Column(String, nullable=True)
    details = Column(Text, nullable=True)  # JSON
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_activity_logs_channel", "channel_id", "created_at"),
    )

    def __repr__(self):
        return f"<ActivityLog(channel_id={self.channel_id}, action={self.action})>"
