"""
fitsettle.nostr - Nostr workout event source

Fetches kind 1301 workout events from relays over trio-websocket.
"""

from .event_source import EventSourceAdapter, FetchResult, compute_event_id, verify_event_id
from .relay import RelayClient, RelayError

__all__ = [
    "EventSourceAdapter",
    "FetchResult",
    "compute_event_id",
    "verify_event_id",
    "RelayClient",
    "RelayError",
]
