"""Per-session activity metrics."""

import time
from dataclasses import dataclass, field


@dataclass
class SessionMetrics:
    """Session activity counters and latency tracking."""

    messages_received: int = 0
    malformed_dropped: int = 0
    tool_calls: int = 0
    tool_failures: int = 0

    # Response requested (commit or typed message) → first output delta
    first_delta_latencies_ms: list[float] = field(default_factory=list)
    _response_requested_ts: float | None = None

    session_start_ts: float = field(default_factory=time.monotonic)
    session_end_ts: float | None = None

    def record_message(self) -> None:
        """Record that an inbound message was received."""
        self.messages_received += 1

    def record_malformed(self) -> None:
        """Record that an inbound message was dropped as malformed."""
        self.malformed_dropped += 1

    def record_tool_call(self, failed: bool = False) -> None:
        """Record a completed tool invocation."""
        self.tool_calls += 1
        if failed:
            self.tool_failures += 1

    def record_response_requested(self) -> None:
        """Mark the point a response became expected."""
        if self._response_requested_ts is None:
            self._response_requested_ts = time.monotonic()

    def record_output_delta(self) -> None:
        """Record an output delta, closing any pending latency measurement."""
        if self._response_requested_ts is not None:
            latency = (time.monotonic() - self._response_requested_ts) * 1000.0
            self.first_delta_latencies_ms.append(latency)
            self._response_requested_ts = None

    def compute_avg_first_delta_latency_ms(self) -> float | None:
        """Average time from response request to first delta.

        Returns:
            float: Average latency in milliseconds, or None if no samples
        """
        if not self.first_delta_latencies_ms:
            return None
        return sum(self.first_delta_latencies_ms) / len(self.first_delta_latencies_ms)

    def finalize(self) -> None:
        """Mark session as complete and record end time."""
        self.session_end_ts = time.monotonic()

    def summary(self) -> dict[str, float | int | None]:
        """Metrics summary for logging."""
        return {
            "messages_received": self.messages_received,
            "malformed_dropped": self.malformed_dropped,
            "tool_calls": self.tool_calls,
            "tool_failures": self.tool_failures,
            "avg_first_delta_latency_ms": self.compute_avg_first_delta_latency_ms(),
            "session_duration_s": (
                (self.session_end_ts or time.monotonic()) - self.session_start_ts
            ),
        }
