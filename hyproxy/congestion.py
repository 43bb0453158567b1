"""Brutal congestion control with token-bucket pacing."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

INIT_MAX_DATAGRAM_SIZE = 1252

PKT_INFO_SLOT_COUNT = 4
MIN_SAMPLE_COUNT = 50
MIN_ACK_RATE = 0.8

MAX_BURST_PACKETS = 10
MIN_PACING_DELAY = 0.001  # seconds

DEFAULT_CONGESTION_WINDOW = 10240

_NS_PER_SECOND = 1_000_000_000
_MIN_PACING_DELAY_NS = 1_000_000


class RTTStatsProvider(Protocol):
    """Source of the smoothed round-trip time, in seconds."""

    @property
    def smoothed_rtt(self) -> float:
        """Smoothed RTT in seconds; 0 or less when unknown."""


class Pacer:
    """Token-bucket pacer; times are in seconds, sizes in bytes.

    get_bandwidth returns the current bandwidth in bytes per second.
    """

    def __init__(self, get_bandwidth: Callable[[], int]) -> None:
        self.budget_at_last_sent = MAX_BURST_PACKETS * INIT_MAX_DATAGRAM_SIZE
        self.max_datagram_size = INIT_MAX_DATAGRAM_SIZE
        self.last_sent_time: Optional[float] = None
        self._get_bandwidth = get_bandwidth

    def sent_packet(self, send_time: float, size: int) -> None:
        budget = self.budget(send_time)
        self.budget_at_last_sent = 0 if size > budget else budget - size
        self.last_sent_time = send_time

    def budget(self, now: float) -> int:
        """Bytes that may be sent at time now."""
        if self.last_sent_time is None:
            return self._max_burst_size()
        elapsed_ns = round((now - self.last_sent_time) * _NS_PER_SECOND)
        budget = self.budget_at_last_sent + self._get_bandwidth() * elapsed_ns // _NS_PER_SECOND
        return min(self._max_burst_size(), budget)

    def _max_burst_size(self) -> int:
        burst_ns = _MIN_PACING_DELAY_NS + 1_000_000
        return max(
            burst_ns * self._get_bandwidth() // _NS_PER_SECOND,
            MAX_BURST_PACKETS * self.max_datagram_size,
        )

    def time_until_send(self) -> Optional[float]:
        """When the next packet may be sent, or None if it may be sent now."""
        if self.budget_at_last_sent >= self.max_datagram_size:
            return None
        missing = self.max_datagram_size - self.budget_at_last_sent
        delay_ns = math.ceil(missing * _NS_PER_SECOND / self._get_bandwidth())
        base = self.last_sent_time if self.last_sent_time is not None else 0.0
        return base + max(_MIN_PACING_DELAY_NS, delay_ns) / _NS_PER_SECOND

    def set_max_datagram_size(self, size: int) -> None:
        self.max_datagram_size = size


@dataclass
class _PacketInfo:
    timestamp: int = 0
    ack_count: int = 0
    loss_count: int = 0


class BrutalSender:
    """Sends at a fixed rate, compensating for the observed loss rate."""

    def __init__(self, bps: int, clock: Callable[[], float] = time.time) -> None:
        self.bps = bps
        self.max_datagram_size = INIT_MAX_DATAGRAM_SIZE
        self._rtt_stats: Optional[RTTStatsProvider] = None
        self._ack_rate = 1.0
        self._slots = [_PacketInfo() for _ in range(PKT_INFO_SLOT_COUNT)]
        self._clock = clock
        self.pacer = Pacer(lambda: int(self.bps / self._ack_rate))

    @property
    def ack_rate(self) -> float:
        return self._ack_rate

    def set_rtt_stats_provider(self, rtt_stats: RTTStatsProvider) -> None:
        self._rtt_stats = rtt_stats

    def time_until_send(self, bytes_in_flight: int) -> Optional[float]:
        return self.pacer.time_until_send()

    def has_pacing_budget(self) -> bool:
        return self.pacer.budget(self._clock()) >= self.max_datagram_size

    def can_send(self, bytes_in_flight: int) -> bool:
        return bytes_in_flight < self.get_congestion_window()

    def get_congestion_window(self) -> int:
        rtt = self._rtt_stats.smoothed_rtt if self._rtt_stats is not None else 0.0
        if rtt <= 0:
            return DEFAULT_CONGESTION_WINDOW
        return int(self.bps * rtt * 1.5 / self._ack_rate)

    def on_packet_sent(
        self,
        sent_time: float,
        bytes_in_flight: int,
        packet_number: int,
        size: int,
        is_retransmittable: bool,
    ) -> None:
        self.pacer.sent_packet(sent_time, size)

    def on_packet_acked(
        self, number: int, acked_bytes: int, prior_in_flight: int, event_time: float
    ) -> None:
        self._record(math.floor(event_time), acked=True)

    def on_packet_lost(self, number: int, lost_bytes: int, prior_in_flight: int) -> None:
        self._record(math.floor(self._clock()), acked=False)

    def _record(self, timestamp: int, acked: bool) -> None:
        info = self._slots[timestamp % PKT_INFO_SLOT_COUNT]
        if info.timestamp != timestamp:
            # Unused or stale slot.
            info.timestamp, info.ack_count, info.loss_count = timestamp, 0, 0
        if acked:
            info.ack_count += 1
        else:
            info.loss_count += 1
        self._update_ack_rate(timestamp)

    def _update_ack_rate(self, current_timestamp: int) -> None:
        min_timestamp = current_timestamp - PKT_INFO_SLOT_COUNT
        recent = [info for info in self._slots if info.timestamp >= min_timestamp]
        acks = sum(info.ack_count for info in recent)
        losses = sum(info.loss_count for info in recent)
        if acks + losses < MIN_SAMPLE_COUNT:
            self._ack_rate = 1.0
            return
        self._ack_rate = max(acks / (acks + losses), MIN_ACK_RATE)

    def set_max_datagram_size(self, size: int) -> None:
        self.max_datagram_size = size
        self.pacer.set_max_datagram_size(size)

    def in_slow_start(self) -> bool:
        return False

    def in_recovery(self) -> bool:
        return False

    def maybe_exit_slow_start(self) -> bool:
        """Whether slow start was left; never, since Brutal has no slow start."""
        return False

    def on_retransmission_timeout(self, packets_retransmitted: bool) -> bool:
        """Whether the timeout changed the sending state; Brutal keeps its rate."""
        return False