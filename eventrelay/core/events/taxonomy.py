"""
Event Taxonomy

Event naming convention: {domain}.{action} or {domain}.{entity}.{action}
- domain: user, site, kb, ai, voice, system
- action: past tense verb (created, updated, published) or a request noun
"""

from enum import Enum
from typing import Dict


class EventDomain(str, Enum):
    """Top-level event domains."""
    USER = "user"
    SITE = "site"
    KB = "kb"
    AI = "ai"
    VOICE = "voice"
    SYSTEM = "system"


class UserEventType(str, Enum):
    """User account events."""
    CREATED = "user.created"
    UPDATED = "user.updated"
    DELETED = "user.deleted"


class SiteEventType(str, Enum):
    """Site lifecycle events."""
    CREATED = "site.created"
    UPDATED = "site.updated"
    PUBLISHED = "site.published"
    DELETED = "site.deleted"


class KnowledgeBaseEventType(str, Enum):
    """Knowledge base document and index events."""
    DOCUMENT_ADDED = "kb.document.added"
    DOCUMENT_UPDATED = "kb.document.updated"
    DOCUMENT_DELETED = "kb.document.deleted"
    REINDEX_REQUESTED = "kb.reindex.requested"
    REINDEX_COMPLETED = "kb.reindex.completed"


class AIEventType(str, Enum):
    """AI query and training events."""
    QUERY_RECEIVED = "ai.query.received"
    QUERY_COMPLETED = "ai.query.completed"
    TRAINING_STARTED = "ai.training.started"
    TRAINING_COMPLETED = "ai.training.completed"


class VoiceEventType(str, Enum):
    """Voice session events."""
    SESSION_STARTED = "voice.session.started"
    SESSION_ENDED = "voice.session.ended"
    TTS_REQUESTED = "voice.tts.requested"
    STT_COMPLETED = "voice.stt.completed"


class SystemEventType(str, Enum):
    """System-level events."""
    STARTUP = "system.startup"
    SHUTDOWN = "system.shutdown"
    ERROR = "system.error"
    HEALTH_CHECK = "system.health.check"


# Combined lookup for all event types
ALL_EVENT_TYPES: Dict[str, str] = {
    **{e.value: e.name for e in UserEventType},
    **{e.value: e.name for e in SiteEventType},
    **{e.value: e.name for e in KnowledgeBaseEventType},
    **{e.value: e.name for e in AIEventType},
    **{e.value: e.name for e in VoiceEventType},
    **{e.value: e.name for e in SystemEventType},
}


def validate_event_type(event_type: str) -> bool:
    """Check if event type is part of the taxonomy."""
    return event_type in ALL_EVENT_TYPES


def get_domain(event_type: str) -> str:
    """Extract domain from event type."""
    return event_type.split(".")[0] if "." in event_type else "unknown"
