"""
Prometheus metrics for the API service.

Tracks WebSocket sessions, room membership, socket events and the chat
message flow. Registered on the default registry so the /metrics endpoint
exposed by prometheus-fastapi-instrumentator includes them.
"""
from prometheus_client import Counter, Gauge

# WebSocket connection metrics
websocket_connections_active = Gauge(
    "websocket_connections_active",
    "Number of active WebSocket connections",
    labelnames=["instance"]
)

websocket_connections_total = Counter(
    "websocket_connections_total",
    "Total number of WebSocket connections admitted",
    labelnames=["instance"]
)

websocket_connections_rejected_total = Counter(
    "websocket_connections_rejected_total",
    "Total number of WebSocket connections refused at the handshake",
    labelnames=["reason"]
)

websocket_disconnections_total = Counter(
    "websocket_disconnections_total",
    "Total number of WebSocket disconnections",
    labelnames=["instance", "reason"]
)

websocket_users_connected = Gauge(
    "websocket_users_connected",
    "Number of unique users currently connected",
    labelnames=["instance"]
)

websocket_rooms_active = Gauge(
    "websocket_rooms_active",
    "Number of non-empty broadcast rooms",
    labelnames=["instance"]
)

websocket_events_sent_total = Counter(
    "websocket_events_sent_total",
    "Total number of events delivered to WebSocket connections",
    labelnames=["event", "instance"]
)

websocket_events_received_total = Counter(
    "websocket_events_received_total",
    "Total number of client events received via WebSocket",
    labelnames=["event", "instance"]
)

websocket_events_dropped_total = Counter(
    "websocket_events_dropped_total",
    "Events emitted to a room with no members",
    labelnames=["event"]
)

# Chat business metrics
messages_created_total = Counter(
    "chat_messages_created_total",
    "Total number of chat messages persisted",
    labelnames=["direction", "source"]
)

webhook_events_total = Counter(
    "whatsapp_webhook_events_total",
    "Inbound gateway webhook events by outcome",
    labelnames=["event", "result"]
)


def update_websocket_metrics(connection_manager) -> None:
    """
    Refresh WebSocket gauges from connection manager state.

    Args:
        connection_manager: ConnectionManager instance
    """
    websocket_connections_active.labels(instance="api").set(connection_manager.get_connection_count())
    websocket_users_connected.labels(instance="api").set(connection_manager.get_user_count())
    websocket_rooms_active.labels(instance="api").set(connection_manager.get_room_count())
