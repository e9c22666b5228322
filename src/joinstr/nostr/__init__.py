"""
Nostr events, encrypted direct messages and relay clients.
"""

from joinstr.nostr.event import Event, NostrError, NostrKeys, build_event
from joinstr.nostr.messages import MessageError, decode_message, encode_message
from joinstr.nostr.relay import RelayClient, RelayError, WebSocketRelay

__all__ = [
    "Event",
    "MessageError",
    "NostrError",
    "NostrKeys",
    "RelayClient",
    "RelayError",
    "WebSocketRelay",
    "build_event",
    "decode_message",
    "encode_message",
]
