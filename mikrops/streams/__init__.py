"""Live device streams.

- kinds: subscription keys, per-kind listen specs and typed events
- session: one listen producing events, with a broken/complete outcome
- multiplexer: keyed registry sharing one session among many subscribers
"""

from mikrops.streams.kinds import (
    FinalEvent,
    LogEntry,
    PingReply,
    PingSummary,
    StreamEvent,
    StreamKind,
    SubscriptionKey,
    TrafficSample,
)
from mikrops.streams.multiplexer import StreamMultiplexer, Subscriber
from mikrops.streams.session import SessionOutcome, SubscriptionSession

__all__ = [
    "StreamKind",
    "SubscriptionKey",
    "StreamEvent",
    "FinalEvent",
    "TrafficSample",
    "LogEntry",
    "PingReply",
    "PingSummary",
    "SubscriptionSession",
    "SessionOutcome",
    "StreamMultiplexer",
    "Subscriber",
]
