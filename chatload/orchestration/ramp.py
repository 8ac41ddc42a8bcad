"""Ramp profiles: target concurrency over wall-clock time."""

import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str | int | float) -> float:
    """Parse ``90``, ``"30s"``, ``"1m30s"`` or ``"500ms"`` into seconds."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, int | float):
        seconds = float(value)
    else:
        text = value.strip().lower()
        if re.fullmatch(r"\d+(?:\.\d+)?", text):
            seconds = float(text)
        else:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(n + u for n, u in parts) != text:
                raise ValueError(f"Invalid duration: {value!r}")
            seconds = sum(float(n) * _UNIT_SECONDS[u] for n, u in parts)
    if seconds < 0:
        raise ValueError(f"Duration must be non-negative, got {value!r}")
    return seconds


@dataclass(frozen=True)
class RampStage:
    duration_seconds: float
    target: int

    def __post_init__(self) -> None:
        if self.duration_seconds < 0:
            raise ValueError(f"Stage duration must be >= 0, got {self.duration_seconds}")
        if self.target < 0:
            raise ValueError(f"Stage target must be >= 0, got {self.target}")


@dataclass(frozen=True)
class RampProfile:
    """Ordered stages; each ramps linearly from the previous stage's target."""

    stages: tuple[RampStage, ...]
    name: str = "custom"

    def __post_init__(self) -> None:
        if not self.stages:
            raise ValueError("A ramp profile needs at least one stage")

    @property
    def total_duration(self) -> float:
        return sum(stage.duration_seconds for stage in self.stages)

    @property
    def peak(self) -> int:
        return max(stage.target for stage in self.stages)

    def target_at(self, elapsed: float) -> int:
        start = 0
        remaining = max(0.0, elapsed)
        for stage in self.stages:
            if remaining < stage.duration_seconds:
                fraction = remaining / stage.duration_seconds
                return int(math.floor(start + (stage.target - start) * fraction + 0.5))
            remaining -= stage.duration_seconds
            start = stage.target
        return start

    @classmethod
    def from_dict(cls, data: dict[str, Any], name: str = "custom") -> "RampProfile":
        raw_stages = data.get("stages")
        if not isinstance(raw_stages, list):
            raise ValueError("Profile must define a list of stages")
        stages = tuple(
            RampStage(duration_seconds=parse_duration(s["duration"]), target=int(s["target"]))
            for s in raw_stages
        )
        return cls(stages=stages, name=data.get("name", name))

    @classmethod
    def load(cls, path: str | Path) -> "RampProfile":
        path = Path(path)
        with path.open() as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data, name=path.stem)

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "stages": [
                {"duration_seconds": s.duration_seconds, "target": s.target} for s in self.stages
            ],
        }


# ---------------------------------------------------------------------------
# Built-in profiles
# ---------------------------------------------------------------------------


def _profile_default(total_users: int) -> RampProfile:
    """Ramp to every user in 1 min, hold 3 min, ramp down over 3 min."""
    return RampProfile(
        name="default",
        stages=(
            RampStage(60, total_users),
            RampStage(180, total_users),
            RampStage(180, 0),
        ),
    )


def _profile_smoke(total_users: int) -> RampProfile:
    """A handful of users for a couple of minutes."""
    users = max(1, min(total_users, 10))
    return RampProfile(
        name="smoke",
        stages=(RampStage(15, users), RampStage(90, users), RampStage(15, 0)),
    )


def _profile_soak(total_users: int) -> RampProfile:
    """Half the population held for an hour."""
    users = max(1, total_users // 2)
    return RampProfile(
        name="soak",
        stages=(RampStage(300, users), RampStage(3600, users), RampStage(120, 0)),
    )


def _profile_spike(total_users: int) -> RampProfile:
    """Baseline at a fifth of the users, jump to all of them, return to baseline."""
    base = max(1, total_users // 5)
    return RampProfile(
        name="spike",
        stages=(
            RampStage(60, base),
            RampStage(60, base),
            RampStage(10, total_users),
            RampStage(120, total_users),
            RampStage(10, base),
            RampStage(60, base),
            RampStage(30, 0),
        ),
    )


PROFILES: dict[str, Callable[[int], RampProfile]] = {
    "default": _profile_default,
    "smoke": _profile_smoke,
    "soak": _profile_soak,
    "spike": _profile_spike,
}
