"""
eventrelay Event System

In-process event bus, envelope models, taxonomy and payload schemas.

Usage:
    from eventrelay.core.events import EventBus, SiteEventType

    bus = EventBus()
    bus.subscribe(SiteEventType.PUBLISHED.value, on_site_published)
    await bus.publish(
        SiteEventType.PUBLISHED.value,
        {"siteId": site.id, "url": site.url},
        {"tenant_id": site.tenant_id},
    )
"""

from .taxonomy import (
    EventDomain,
    UserEventType,
    SiteEventType,
    KnowledgeBaseEventType,
    AIEventType,
    VoiceEventType,
    SystemEventType,
    validate_event_type,
    get_domain,
    ALL_EVENT_TYPES,
)

from .models import (
    Event,
    EventMetadata,
    SYSTEM_TENANT_ID,
)

from .errors import (
    EventBusError,
    EventHandlerError,
    EventTimeoutError,
    EventValidationError,
)

from .schemas import (
    PayloadModel,
    PAYLOAD_SCHEMAS,
    register_payload_schema,
    get_payload_schema,
    validate_payload,
)

from .bus import (
    EventBus,
    EventHandler,
    Subscription,
)


__all__ = [
    # Taxonomy
    "EventDomain",
    "UserEventType",
    "SiteEventType",
    "KnowledgeBaseEventType",
    "AIEventType",
    "VoiceEventType",
    "SystemEventType",
    "validate_event_type",
    "get_domain",
    "ALL_EVENT_TYPES",
    # Models
    "Event",
    "EventMetadata",
    "SYSTEM_TENANT_ID",
    # Errors
    "EventBusError",
    "EventHandlerError",
    "EventTimeoutError",
    "EventValidationError",
    # Schemas
    "PayloadModel",
    "PAYLOAD_SCHEMAS",
    "register_payload_schema",
    "get_payload_schema",
    "validate_payload",
    # Bus
    "EventBus",
    "EventHandler",
    "Subscription",
]
