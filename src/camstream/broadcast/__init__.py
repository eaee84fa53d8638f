"""
Broadcast Module
================

Fan-out of frames to streaming viewers.

Components:
    - ClientSink / QueueSink: Non-blocking per-viewer output
    - BroadcastRegistry: Client set, throttling, keep-alives
"""

from camstream.broadcast.sink import ClientSink, QueueSink
from camstream.broadcast.registry import BroadcastRegistry, ClientRegistration


__all__ = [
    "ClientSink",
    "QueueSink",
    "BroadcastRegistry",
    "ClientRegistration",
]
