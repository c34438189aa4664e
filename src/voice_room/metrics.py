"""Per-connection activity metrics for the voice room coordinator."""

import time
from dataclasses import dataclass, field

from src.voice_room.models import SignalKind


@dataclass
class CoordinatorMetrics:
    """Signaling, media and presence counters for one connected period."""

    # Signaling traffic
    signals_sent: dict[str, int] = field(
        default_factory=lambda: {kind.value: 0 for kind in SignalKind}
    )
    signals_received: dict[str, int] = field(
        default_factory=lambda: {kind.value: 0 for kind in SignalKind}
    )
    candidates_buffered: int = 0
    candidates_dropped: int = 0

    # Failures (logged, not raised)
    signaling_failures: int = 0
    transport_failures: int = 0

    # Capture and presence
    captures_acquired: int = 0
    captures_released: int = 0
    speaking_writes: int = 0

    # Timing
    join_started_ts: float = field(default_factory=time.monotonic)
    join_latency_ms: float | None = None
    connected_ts: float | None = None
    disconnected_ts: float | None = None

    def record_signal_sent(self, kind: SignalKind) -> None:
        self.signals_sent[kind.value] += 1

    def record_signal_received(self, kind: SignalKind) -> None:
        self.signals_received[kind.value] += 1

    def record_connected(self) -> None:
        """Mark the end of join and record its latency."""
        now = time.monotonic()
        self.connected_ts = now
        self.join_latency_ms = (now - self.join_started_ts) * 1000.0

    def finalize(self) -> None:
        """Mark the connected period as over."""
        self.disconnected_ts = time.monotonic()

    def connected_duration_s(self) -> float | None:
        if self.connected_ts is None:
            return None
        return (self.disconnected_ts or time.monotonic()) - self.connected_ts
