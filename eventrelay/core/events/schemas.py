"""
Event Payload Schemas

Narrows the free-form event payload per event type. Producers validate at
the outbox boundary; the payload itself stays a plain dict on the wire, and
extra keys are kept.

Types without a registered schema are accepted unchanged.
"""

import logging
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ValidationError

from .errors import EventValidationError
from .taxonomy import (
    UserEventType,
    SiteEventType,
    KnowledgeBaseEventType,
    AIEventType,
    VoiceEventType,
    SystemEventType,
    validate_event_type,
)

logger = logging.getLogger(__name__)


class PayloadModel(BaseModel):
    """Base for payload schemas; camelCase on the wire, extra keys allowed."""

    class Config:
        extra = "allow"


class SitePayload(PayloadModel):
    siteId: str


class SitePublishedPayload(PayloadModel):
    url: str
    siteId: Optional[str] = None


class UserPayload(PayloadModel):
    userId: str


class UserUpdatedPayload(PayloadModel):
    userId: str
    changes: Dict[str, Any] = {}


class KBDocumentPayload(PayloadModel):
    documentId: str
    siteId: str


class KBReindexPayload(PayloadModel):
    siteId: str
    reason: Optional[str] = None


class AIQueryPayload(PayloadModel):
    sessionId: str
    query: str


class VoiceSessionStartedPayload(PayloadModel):
    sessionId: str
    siteId: str


class VoiceSessionEndedPayload(PayloadModel):
    sessionId: str
    duration: Optional[float] = None


class SystemErrorPayload(PayloadModel):
    error: str
    stack: Optional[str] = None


PAYLOAD_SCHEMAS: Dict[str, Type[BaseModel]] = {
    UserEventType.CREATED.value: UserPayload,
    UserEventType.UPDATED.value: UserUpdatedPayload,
    UserEventType.DELETED.value: UserPayload,
    SiteEventType.CREATED.value: SitePayload,
    SiteEventType.UPDATED.value: SitePayload,
    SiteEventType.PUBLISHED.value: SitePublishedPayload,
    SiteEventType.DELETED.value: SitePayload,
    KnowledgeBaseEventType.DOCUMENT_ADDED.value: KBDocumentPayload,
    KnowledgeBaseEventType.DOCUMENT_UPDATED.value: KBDocumentPayload,
    KnowledgeBaseEventType.DOCUMENT_DELETED.value: KBDocumentPayload,
    KnowledgeBaseEventType.REINDEX_REQUESTED.value: KBReindexPayload,
    AIEventType.QUERY_RECEIVED.value: AIQueryPayload,
    VoiceEventType.SESSION_STARTED.value: VoiceSessionStartedPayload,
    VoiceEventType.SESSION_ENDED.value: VoiceSessionEndedPayload,
    SystemEventType.ERROR.value: SystemErrorPayload,
}


def register_payload_schema(event_type: str, model: Type[BaseModel]) -> None:
    """Register or replace the payload schema for an event type."""
    PAYLOAD_SCHEMAS[event_type] = model


def get_payload_schema(event_type: str) -> Optional[Type[BaseModel]]:
    return PAYLOAD_SCHEMAS.get(event_type)


def validate_payload(event_type: str, payload: Any) -> Dict[str, Any]:
    """
    Validate a payload against the schema registered for its type.

    Returns the payload unchanged when valid.

    Raises:
        EventValidationError: payload is not a mapping or fails its schema
    """
    if not isinstance(payload, dict):
        raise EventValidationError(
            event_type,
            message=f"Payload for event {event_type} must be a mapping, got {type(payload).__name__}"
        )

    schema = get_payload_schema(event_type)
    if schema is None:
        if not validate_event_type(event_type):
            logger.warning(f"Unknown event type: {event_type} - accepting payload unvalidated")
        return payload

    try:
        schema.model_validate(payload)
    except ValidationError as e:
        raise EventValidationError(event_type, errors=e.errors(include_url=False)) from e

    return payload
