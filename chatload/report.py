"""Results report for a finished run."""

import sys
from collections import Counter
from datetime import UTC, datetime
from typing import Any

from chatload.config import Settings
from chatload.metrics import RTT_METRIC, UNDELIVERED_METRIC, Metric
from chatload.orchestration.orchestrator import Orchestrator


def collect_results(orchestrator: Orchestrator, settings: Settings) -> dict[str, Any]:
    """Aggregate a reconciled run into a JSON-serialisable report."""
    metrics = orchestrator.metrics
    counters = metrics.counters()
    close_reasons = Counter(
        str(s.close_reason) for s in orchestrator.sessions if s.close_reason is not None
    )
    sent = metrics.count(Metric.MESSAGES_SENT)

    return {
        "test_config": {
            "profile": orchestrator.profile.as_dict(),
            "api_base_url": settings.api_base_url,
            "ws_url": settings.ws_url,
            "user_prefix": settings.user_prefix,
            "total_users": settings.total_users,
            "send_interval_ms": settings.send_interval_ms,
            "session_time_ms": settings.session_time_ms,
            "chat_refresh_ms": settings.chat_refresh_ms,
        },
        "summary": {
            "wall_time_seconds": round(orchestrator.wall_time, 1),
            "sessions": len(orchestrator.sessions),
            "identities_signed_in": len(orchestrator.credentials),
            "messages_sent": sent,
            "avg_send_rate": round(sent / max(orchestrator.wall_time, 0.001), 2),
            "close_reasons": dict(close_reasons),
        },
        "counters": counters,
        "latency": {RTT_METRIC: metrics.rtt_percentiles()},
        "reconciliation": metrics.reconciliation(),
        "concurrency_curve": [
            {
                "elapsed_seconds": s.elapsed_seconds,
                "target": s.target,
                "live": s.live,
                "stopping": s.stopping,
            }
            for s in orchestrator.samples
        ],
        "generated_at": datetime.now(UTC).isoformat(),
    }


def print_summary(results: dict[str, Any], stream=None) -> None:
    """Human-readable summary, printed to stderr by default."""
    out = stream or sys.stderr
    line = "-" * 60
    print(f"\n{line}", file=out)
    print("  CHAT LOAD TEST RESULTS", file=out)
    print(line, file=out)

    summary = results.get("summary", {})
    print(f"  Wall time:      {summary.get('wall_time_seconds', 'N/A')}s", file=out)
    print(f"  Sessions:       {summary.get('sessions', 'N/A')}", file=out)
    print(f"  Messages sent:  {summary.get('messages_sent', 'N/A')}", file=out)

    counters = results.get("counters", {})
    if counters:
        print(f"\n  {'Counter':<28} {'Value':>10}", file=out)
        print(f"  {'-' * 28} {'-' * 10}", file=out)
        for name, value in counters.items():
            print(f"  {name:<28} {value:>10}", file=out)

    latency = results.get("latency", {}).get(RTT_METRIC, {})
    if latency:
        print(
            f"\n  RTT (ms): p50={latency.get('p50_ms')}  p95={latency.get('p95_ms')}  "
            f"p99={latency.get('p99_ms')}  max={latency.get('max_ms')}  "
            f"n={latency.get('count')}",
            file=out,
        )

    recon = results.get("reconciliation", {})
    if recon:
        print(
            f"\n  Undelivered ping messages (no echo observed): "
            f"{recon.get(UNDELIVERED_METRIC, 'N/A')}",
            file=out,
        )
        ratio = recon.get("delivery_ratio")
        if ratio is not None:
            print(f"  Delivery ratio: {ratio * 100:.2f}%", file=out)

    print(f"{line}\n", file=out)
