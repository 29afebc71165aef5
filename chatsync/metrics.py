from prometheus_client import (
    Counter,
    Gauge,
)

EVENTS_RECEIVED = Counter(
    "chat_events_received_total", "Inbound events delivered by the broker", ["channel"]
)
EVENTS_DROPPED = Counter(
    "chat_events_dropped_total", "Inbound events discarded", ["reason"]
)
EVENTS_PUBLISHED = Counter(
    "chat_events_published_total", "Events published to the broker", ["channel"]
)
PUBLISH_FAILURES = Counter("chat_publish_failures_total", "Failed best-effort publishes")
STATE_TRANSITIONS = Counter(
    "chat_connection_transitions_total", "Connection state transitions", ["state"]
)
EVENTS_RELAYED = Counter(
    "chat_events_relayed_total", "Command events rebroadcast by the relay", ["kind"]
)
RELAY_USERS = Gauge("chat_relay_active_users", "Users announced to the relay")
