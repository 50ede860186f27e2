"""
Database Package
================

Exports key database components.
"""

from agentmafia.db.models import (
    Base,
    # Core tables
    Conversation, Agent, Relationship, Message, Escalation,
    AgentContext, OrgTemplate, Setting,
    # Progress tables
    ProjectProgress, ProgressPhase, DecisionRecord, FileChange, CheckpointRecord,
)
from agentmafia.db.connection import init_db, get_session_maker, close_db
