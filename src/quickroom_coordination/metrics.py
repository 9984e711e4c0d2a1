"""Prometheus metrics shared by the services and the HTTP surface."""

from prometheus_client import CollectorRegistry, Counter

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests by endpoint", ["path"], registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total errors by outcome", ["outcome"], registry=CUSTOM_REGISTRY)
CONVERSATIONS_CREATED = Counter(
    "conversations_created_total", "Conversations newly established", registry=CUSTOM_REGISTRY
)
CONVERSATION_ROLLBACKS = Counter(
    "conversation_rollbacks_total", "Conversation setups rolled back", registry=CUSTOM_REGISTRY
)
APPOINTMENT_TRANSITIONS = Counter(
    "appointment_transitions_total",
    "Verified appointment status changes",
    ["status"],
    registry=CUSTOM_REGISTRY,
)
NOTIFICATIONS_FAILED = Counter(
    "notifications_failed_total", "Notifications that could not be created", registry=CUSTOM_REGISTRY
)
