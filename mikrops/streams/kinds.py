"""Stream kinds, subscription keys and typed stream events.

Every kind of live subscription (interface traffic, log tail, ping) is
described by one :class:`StreamSpec`: how to build the RouterOS listen
command, how to decode a raw ``!re`` record into a typed sample, which broker
channel carries it and whether the stream is finite.
"""

import ipaddress
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, computed_field

# Broker channels
CHANNEL_TRAFFIC_DIRECT = "device:traffic:direct"
CHANNEL_TRAFFIC_CUSTOMERS = "device:traffic:customers"
CHANNEL_LOGS = "device:logs:stream"
CHANNEL_PING = "device:ping:stream"
CHANNEL_DEVICE_EVENTS = "device:events"


def ppp_active_channel(tenant_id: str) -> str:
    return f"ppp:active:{tenant_id}"


def ppp_inactive_channel(tenant_id: str) -> str:
    return f"ppp:inactive:{tenant_id}"


class StreamKind(str, Enum):
    TRAFFIC = "traffic"
    LOG = "log"
    PING = "ping"


@dataclass(frozen=True)
class SubscriptionKey:
    """Deduplication key: equal keys share one subscription session.

    Attributes:
        device_id: Device the listen runs on
        kind: Stream kind
        selector: Interface name, target IP or None (log)
        params: Sorted extra listen arguments, e.g. (("count", "3"),)
    """

    device_id: str
    kind: StreamKind
    selector: str | None = None
    params: tuple[tuple[str, str], ...] = ()

    def __str__(self) -> str:
        parts = [self.device_id, self.kind.value, self.selector or "-"]
        parts.extend(f"{k}={v}" for k, v in self.params)
        return ":".join(parts)

    @property
    def param_map(self) -> dict[str, str]:
        return dict(self.params)

    @classmethod
    def traffic(cls, device_id: str, interface: str) -> "SubscriptionKey":
        if not interface or not interface.strip():
            raise ValueError("interface name must not be empty")
        return cls(device_id, StreamKind.TRAFFIC, interface)

    @classmethod
    def log(cls, device_id: str) -> "SubscriptionKey":
        return cls(device_id, StreamKind.LOG, None)

    @classmethod
    def ping(
        cls,
        device_id: str,
        address: str,
        *,
        size: int | None = None,
        interval: str | None = None,
        count: int | None = None,
    ) -> "SubscriptionKey":
        """Build a ping key; ``address`` must be an IPv4/IPv6 literal."""
        target = str(ipaddress.ip_address(address))
        params = {"size": size, "interval": interval, "count": count}
        if count is not None and count < 1:
            raise ValueError("count must be positive")
        return cls(
            device_id,
            StreamKind.PING,
            target,
            tuple(sorted((k, str(v)) for k, v in params.items() if v is not None)),
        )


# ---------------------------------------------------------------------------
# Typed samples (RouterOS values are forwarded as reported strings)
# ---------------------------------------------------------------------------


class TrafficSample(BaseModel):
    """One ``/interface/monitor-traffic`` record."""

    model_config = ConfigDict(frozen=True)

    name: str
    rx_bits_per_second: str = ""
    tx_bits_per_second: str = ""
    rx_packets_per_second: str = ""
    tx_packets_per_second: str = ""
    fp_rx_bits_per_second: str = ""
    fp_tx_bits_per_second: str = ""
    fp_rx_packets_per_second: str = ""
    fp_tx_packets_per_second: str = ""
    rx_drops_per_second: str = ""
    tx_drops_per_second: str = ""
    tx_queue_drops_per_second: str = ""
    rx_errors_per_second: str = ""
    tx_errors_per_second: str = ""
    section: str = ""

    @classmethod
    def from_record(cls, record: Mapping[str, str]) -> "TrafficSample":
        values = {
            key.replace("-", "_"): value
            for key, value in record.items()
            if key.replace("-", "_") in cls.model_fields
        }
        values["section"] = record.get(".section", "")
        return cls(**values)

    @property
    def is_customer_interface(self) -> bool:
        return self.name.startswith("<pppoe-")


class LogEntry(BaseModel):
    """One ``/log/print =follow=yes`` record."""

    model_config = ConfigDict(frozen=True)

    time: str = ""
    topics: str = ""
    message: str


class PingReply(BaseModel):
    """One ``/ping`` record; sent/received/loss/rtt are cumulative."""

    model_config = ConfigDict(frozen=True)

    seq: str = ""
    host: str = ""
    size: str = ""
    ttl: str = ""
    time: str = ""
    status: str = ""
    sent: str = ""
    received: str = ""
    packet_loss: str = ""
    avg_rtt: str = ""
    min_rtt: str = ""
    max_rtt: str = ""

    @computed_field  # type: ignore[prop-decorator]
    @property
    def reachable(self) -> bool:
        return is_reachable(self.packet_loss)

    @classmethod
    def from_record(cls, record: Mapping[str, str]) -> "PingReply":
        values = {
            key.replace("-", "_"): value
            for key, value in record.items()
            if key.replace("-", "_") in cls.model_fields
        }
        return cls(**values)


class PingSummary(BaseModel):
    """Final totals of a finite ping."""

    model_config = ConfigDict(frozen=True)

    host: str = ""
    sent: str = ""
    received: str = ""
    packet_loss: str = ""
    avg_rtt: str = ""
    min_rtt: str = ""
    max_rtt: str = ""

    @computed_field  # type: ignore[prop-decorator]
    @property
    def reachable(self) -> bool:
        return is_reachable(self.packet_loss)

    @classmethod
    def from_reply(cls, reply: PingReply) -> "PingSummary":
        return cls(
            host=reply.host,
            sent=reply.sent,
            received=reply.received,
            packet_loss=reply.packet_loss,
            avg_rtt=reply.avg_rtt,
            min_rtt=reply.min_rtt,
            max_rtt=reply.max_rtt,
        )


def is_reachable(packet_loss: str) -> bool:
    """A target is reachable iff packet-loss is reported and is not 100."""
    return packet_loss != "" and packet_loss != "100"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


EventType = Literal["update", "summary"]


@dataclass(frozen=True)
class StreamEvent:
    """A decoded sample as delivered to subscribers."""

    key: SubscriptionKey
    type: EventType
    data: BaseModel
    channel: str

    def envelope(self) -> dict[str, Any]:
        """WebSocket envelope: ``{type: update, data}`` or ``{type: summary, summary}``."""
        payload = self.data.model_dump()
        if self.type == "summary":
            return {"type": "summary", "summary": payload}
        return {"type": "update", "data": payload}

    def broker_payload(self) -> dict[str, Any]:
        return {
            "device_id": self.key.device_id,
            "kind": self.key.kind.value,
            "selector": self.key.selector,
            **self.envelope(),
        }


@dataclass(frozen=True)
class FinalEvent:
    """Last item a subscriber receives before its queue closes."""

    reason: str
    error: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def envelope(self) -> dict[str, Any]:
        return {"type": "error", "error": self.error or self.reason}


# ---------------------------------------------------------------------------
# Per-kind specs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StreamSpec:
    """How one stream kind maps onto a RouterOS listen command.

    Attributes:
        kind: Stream kind
        command: Listen command path
        build_args: Key -> attribute words of the listen command
        decode: Raw record -> event (type, sample) or None to drop the record
        channel: Sample -> broker channel
        finite: Key -> whether ``!done`` is an orderly end
    """

    kind: StreamKind
    command: str
    build_args: Callable[[SubscriptionKey], dict[str, str]]
    decode: Callable[[Mapping[str, str]], tuple[EventType, BaseModel] | None]
    channel: Callable[[BaseModel], str]
    finite: Callable[[SubscriptionKey], bool] = field(default=lambda key: False)


def _decode_traffic(record: Mapping[str, str]) -> tuple[EventType, BaseModel] | None:
    if not record.get("name"):
        return None
    return "update", TrafficSample.from_record(record)


def _traffic_channel(sample: BaseModel) -> str:
    if isinstance(sample, TrafficSample) and sample.is_customer_interface:
        return CHANNEL_TRAFFIC_CUSTOMERS
    return CHANNEL_TRAFFIC_DIRECT


def _decode_log(record: Mapping[str, str]) -> tuple[EventType, BaseModel] | None:
    if not record.get("message"):
        return None
    return "update", LogEntry(
        time=record.get("time", ""),
        topics=record.get("topics", ""),
        message=record["message"],
    )


def _decode_ping(record: Mapping[str, str]) -> tuple[EventType, BaseModel] | None:
    has_seq = "seq" in record
    has_sent = "sent" in record
    if not has_seq and not has_sent:
        return None
    reply = PingReply.from_record(record)
    if not has_seq:
        return "summary", PingSummary.from_reply(reply)
    return "update", reply


def _ping_args(key: SubscriptionKey) -> dict[str, str]:
    return {"address": key.selector or "", **key.param_map}


TRAFFIC_SPEC = StreamSpec(
    kind=StreamKind.TRAFFIC,
    command="/interface/monitor-traffic",
    build_args=lambda key: {"interface": key.selector or ""},
    decode=_decode_traffic,
    channel=_traffic_channel,
)

LOG_SPEC = StreamSpec(
    kind=StreamKind.LOG,
    command="/log/print",
    build_args=lambda key: {"follow": "yes"},
    decode=_decode_log,
    channel=lambda sample: CHANNEL_LOGS,
)

PING_SPEC = StreamSpec(
    kind=StreamKind.PING,
    command="/ping",
    build_args=_ping_args,
    decode=_decode_ping,
    channel=lambda sample: CHANNEL_PING,
    finite=lambda key: "count" in key.param_map,
)

STREAM_SPECS: dict[StreamKind, StreamSpec] = {
    StreamKind.TRAFFIC: TRAFFIC_SPEC,
    StreamKind.LOG: LOG_SPEC,
    StreamKind.PING: PING_SPEC,
}


def spec_for(kind: StreamKind) -> StreamSpec:
    return STREAM_SPECS[kind]
