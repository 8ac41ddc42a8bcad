"""Process-wide counters and the RTT distribution for one run."""

import math
import statistics
from collections.abc import Iterable
from enum import StrEnum
from typing import Protocol

from chatload.session.probes import AbandonedProbe


class Metric(StrEnum):
    TRANSPORT_ERRORS = "ws_error_count"
    PROTOCOL_ERRORS = "stomp_error_count"
    AUTH_ERRORS = "auth_error_count"
    DIRECTORY_ERRORS = "directory_error_count"
    MESSAGES_SENT = "messages_sent_total"
    MESSAGES_RECEIVED = "messages_received_total"
    CHAT_LIST_REQUESTS = "get_chat_req_total"
    SESSIONS_STARTED = "sessions_started_total"
    SESSIONS_COMPLETED = "sessions_completed_total"
    PROBES_REGISTERED = "probes_registered_total"
    PROBES_RESOLVED = "probes_resolved_total"
    INTERNAL_ERRORS = "internal_error_count"


RTT_METRIC = "chat_message_rtt_ms"
UNDELIVERED_METRIC = "undelivered_messages_total"


class DrainableSession(Protocol):
    @property
    def closed(self) -> bool: ...

    def drain(self) -> list[AbandonedProbe]: ...


class MetricsAggregator:
    """Single-event-loop safe counters; sessions only ever increment."""

    def __init__(self) -> None:
        self._counters: dict[str, int] = {m.value: 0 for m in Metric}
        self._rtts: list[float] = []
        self._undelivered: int | None = None
        self._oldest_abandoned_ms = 0.0

    def incr(self, metric: Metric, amount: int = 1) -> None:
        self._counters[metric.value] += amount

    def count(self, metric: Metric) -> int:
        return self._counters[metric.value]

    def record_rtt(self, rtt_ms: float) -> None:
        self._rtts.append(rtt_ms)
        self._counters[Metric.PROBES_RESOLVED.value] += 1

    @property
    def rtts(self) -> list[float]:
        return list(self._rtts)

    # ---- reconciliation -----------------------------------------------------

    @property
    def reconciled(self) -> bool:
        return self._undelivered is not None

    @property
    def undelivered(self) -> int:
        if self._undelivered is None:
            raise RuntimeError("Run has not been reconciled yet")
        return self._undelivered

    def reconcile(self, sessions: Iterable[DrainableSession]) -> int:
        """Sum abandoned probes across every session of the run.

        Every session must already be closed; reading a partial population
        would misreport probes that are still in flight.
        """
        if self._undelivered is not None:
            raise RuntimeError("Run already reconciled")
        sessions = list(sessions)
        still_open = sum(1 for s in sessions if not s.closed)
        if still_open:
            raise RuntimeError(f"Cannot reconcile while {still_open} session(s) are still open")

        total = 0
        for session in sessions:
            abandoned = session.drain()
            total += len(abandoned)
            for probe in abandoned:
                self._oldest_abandoned_ms = max(self._oldest_abandoned_ms, probe.age_ms)
        self._undelivered = total
        return total

    # ---- aggregation helpers ------------------------------------------------

    @staticmethod
    def _percentile(data: list[float], pct: float) -> float:
        if not data:
            return 0.0
        sorted_data = sorted(data)
        k = (len(sorted_data) - 1) * (pct / 100.0)
        f = math.floor(k)
        c = math.ceil(k)
        if f == c:
            return sorted_data[int(k)]
        return sorted_data[f] * (c - k) + sorted_data[c] * (k - f)

    def rtt_percentiles(self) -> dict[str, float]:
        data = self._rtts
        return {
            "p50_ms": round(self._percentile(data, 50), 2),
            "p95_ms": round(self._percentile(data, 95), 2),
            "p99_ms": round(self._percentile(data, 99), 2),
            "mean_ms": round(statistics.mean(data), 2) if data else 0.0,
            "min_ms": round(min(data), 2) if data else 0.0,
            "max_ms": round(max(data), 2) if data else 0.0,
            "count": len(data),
        }

    def counters(self) -> dict[str, int]:
        return dict(self._counters)

    def reconciliation(self) -> dict[str, float | int | None]:
        registered = self.count(Metric.PROBES_REGISTERED)
        resolved = self.count(Metric.PROBES_RESOLVED)
        return {
            UNDELIVERED_METRIC: self._undelivered,
            "probes_registered": registered,
            "probes_resolved": resolved,
            "delivery_ratio": round(resolved / registered, 4) if registered else None,
            "oldest_undelivered_age_ms": round(self._oldest_abandoned_ms, 2),
        }
