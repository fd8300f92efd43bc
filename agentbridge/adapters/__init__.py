"""Adapters package - bridge between the session core and transports.

Typed events the core publishes and the hub that fans them out to
connected clients.
"""
from __future__ import annotations

__all__ = [
    "EventHub",
    "EventPublisher",
    "event_to_dict",
]

from agentbridge.adapters.event_hub import EventHub, EventPublisher
from agentbridge.adapters.events import event_to_dict
