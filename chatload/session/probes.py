"""Outstanding latency probes for one session.

Each probe ends in exactly one of two fates: resolved (echo observed, RTT
recorded, removed) or abandoned (still pending when the session closes and
the orchestrator drains it). The correlator is owned by a single session
task, so it holds no locks.
"""

import itertools
import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class AbandonedProbe:
    nonce: str
    age_ms: float


class ProbeCorrelator:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._pending: dict[str, float] = {}
        self._sequence = itertools.count(1)
        self._frozen = False
        self._drained = False
        self.registered = 0
        self.resolved = 0

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, nonce: object) -> bool:
        return nonce in self._pending

    @property
    def frozen(self) -> bool:
        return self._frozen

    def mint_nonce(self, epoch_ms: int) -> str:
        """Timestamp plus a per-session counter, unique within the session."""
        return f"{epoch_ms}-{next(self._sequence)}"

    def register(self, nonce: str, sent_at: float | None = None) -> bool:
        """Track a sent probe; False when it replaced a pending one with the same nonce."""
        if self._frozen:
            raise RuntimeError("Cannot register probes on a closed session")
        is_new = nonce not in self._pending
        if is_new:
            self.registered += 1
        self._pending[nonce] = self._clock() if sent_at is None else sent_at
        return is_new

    def resolve(self, nonce: str, now: float | None = None) -> float | None:
        """Return the RTT in milliseconds, or None when the nonce is not pending."""
        sent_at = self._pending.pop(nonce, None)
        if sent_at is None:
            return None
        self.resolved += 1
        now = self._clock() if now is None else now
        return max(0.0, (now - sent_at) * 1000.0)

    def freeze(self) -> None:
        self._frozen = True

    def drain(self, now: float | None = None) -> list[AbandonedProbe]:
        """Hand over every still-pending probe as abandoned. Callable once."""
        if self._drained:
            raise RuntimeError("Probe correlator already drained")
        self._drained = True
        self._frozen = True
        now = self._clock() if now is None else now
        abandoned = [
            AbandonedProbe(nonce=nonce, age_ms=max(0.0, (now - sent_at) * 1000.0))
            for nonce, sent_at in self._pending.items()
        ]
        self._pending.clear()
        return abandoned
