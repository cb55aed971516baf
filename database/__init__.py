"""Database package - models and connection management."""
from database.db import ChannelScope, Database
from database.models import (
    Base,
    ActivityLog,
    Channel,
    ChatMessage,
    LineUser,
    LineUserTag,
    Message,
    RichMenu,
    StepExecution,
    StepMessage,
    StepScenario,
    Tag,
)

__all__ = [
    "Database",
    "ChannelScope",
    "Base",
    "ActivityLog",
    "Channel",
    "ChatMessage",
    "LineUser",
    "LineUserTag",
    "Message",
    "RichMenu",
    "StepExecution",
    "StepMessage",
    "StepScenario",
    "Tag",
]
