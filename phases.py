from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Sequence

from errors import ConfigurationError


# Arrivals landing this close to a phase boundary belong to the next phase.
_BOUNDARY_EPSILON_S = 1e-9


@dataclass(frozen=True)
class Phase:
    duration_s: float
    start_rate: float
    end_rate: Optional[float] = None
    name: Optional[str] = None

    @property
    def is_ramp(self) -> bool:
        return self.end_rate is not None and self.end_rate != self.start_rate

    @property
    def final_rate(self) -> float:
        return self.start_rate if self.end_rate is None else self.end_rate

    def expected_arrivals(self) -> float:
        return (self.start_rate + self.final_rate) / 2.0 * self.duration_s

    def to_dict(self) -> dict[str, object]:
        return {
            "duration_s": self.duration_s,
            "start_rate": self.start_rate,
            "end_rate": self.end_rate,
            "name": self.name,
        }


@dataclass(frozen=True)
class ScheduledStart:
    sequence_id: int
    offset_ms: float
    phase_index: int = 0


def _phase_problems(index: int, phase: Phase) -> list[str]:
    label = f"phase[{index}]" + (f" ({phase.name})" if phase.name else "")
    problems: list[str] = []
    if not (phase.duration_s > 0) or math.isinf(phase.duration_s):
        problems.append(f"{label} duration_s must be > 0, got {phase.duration_s}")
    if not (phase.start_rate >= 0) or math.isinf(phase.start_rate):
        problems.append(f"{label} start_rate must be >= 0, got {phase.start_rate}")
    if phase.end_rate is not None and (not (phase.end_rate >= 0) or math.isinf(phase.end_rate)):
        problems.append(f"{label} end_rate must be >= 0, got {phase.end_rate}")
    return problems


def validate_phases(phases: Sequence[Phase]) -> None:
    if not phases:
        raise ConfigurationError("phase list cannot be empty")
    problems: list[str] = []
    for index, phase in enumerate(phases):
        problems.extend(_phase_problems(index, phase))
    if problems:
        raise ConfigurationError(problems)


def _arrival_time_s(phase: Phase, arrival_index: int) -> Optional[float]:
    """Time into the phase at which the cumulative expected arrivals reach
    ``arrival_index``, or None if that never happens within the rate curve.

    Cumulative arrivals are N(t) = r0*t + (r1 - r0)*t^2 / (2d). Solving
    N(t) = k gives t = 2k / (r0 + sqrt(r0^2 + 2(r1 - r0)k/d)), which stays
    stable for constant, rising and falling rates alike.
    """
    r0 = phase.start_rate
    r1 = phase.final_rate
    if arrival_index == 0:
        return 0.0 if r0 > 0 else None
    discriminant = (r0 * r0) + (2.0 * (r1 - r0) * arrival_index / phase.duration_s)
    if discriminant < 0:
        return None
    denominator = r0 + math.sqrt(discriminant)
    if denominator <= 0:
        return None
    return (2.0 * arrival_index) / denominator


def _iter_phase_offsets_s(phase: Phase) -> Iterator[float]:
    if phase.start_rate == 0 and phase.final_rate == 0:
        return
    # A phase opening at rate zero has nothing to emit at its first instant.
    arrival_index = 0 if phase.start_rate > 0 else 1
    limit = phase.duration_s - _BOUNDARY_EPSILON_S
    while True:
        offset_s = _arrival_time_s(phase, arrival_index)
        if offset_s is None or offset_s >= limit:
            return
        yield offset_s
        arrival_index += 1


def iter_schedule(phases: Iterable[Phase]) -> Iterator[ScheduledStart]:
    """Lazily yield every start of the schedule in emission order.

    Not resumable: call again to restart from the first phase.
    """
    sequence_id = 0
    phase_origin_s = 0.0
    for phase_index, phase in enumerate(phases):
        for offset_s in _iter_phase_offsets_s(phase):
            sequence_id += 1
            yield ScheduledStart(
                sequence_id=sequence_id,
                offset_ms=(phase_origin_s + offset_s) * 1000.0,
                phase_index=phase_index,
            )
        phase_origin_s += phase.duration_s


def count_scheduled(phases: Iterable[Phase]) -> int:
    return sum(1 for _ in iter_schedule(phases))


def expected_arrivals(phases: Iterable[Phase]) -> float:
    return float(sum(phase.expected_arrivals() for phase in phases))


def schedule_duration_s(phases: Iterable[Phase]) -> float:
    return float(sum(phase.duration_s for phase in phases))


def parse_phase(spec: str) -> Phase:
    """Parse ``duration:rate[:end_rate[:name]]``, e.g. ``30:2:10:Ramp-up``."""
    parts = [part.strip() for part in spec.strip().split(":", 3)]
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise ConfigurationError(
            f"Invalid phase '{spec}'. Expected duration:rate[:end_rate[:name]]."
        )
    try:
        duration_s = float(parts[0])
        start_rate = float(parts[1])
        end_rate = float(parts[2]) if len(parts) > 2 and parts[2] else None
    except ValueError as exc:
        raise ConfigurationError(f"Invalid phase '{spec}': {exc}") from exc
    name = parts[3] if len(parts) > 3 and parts[3] else None
    phase = Phase(duration_s=duration_s, start_rate=start_rate, end_rate=end_rate, name=name)
    problems = _phase_problems(0, phase)
    if problems:
        raise ConfigurationError(problems)
    return phase


PRESET_KINDS = ("custom", "ramp", "burst", "spike")


def preset_phases(
    kind: str,
    rate: float,
    duration_s: float,
    ramp_duration_s: float = 30.0,
) -> list[Phase]:
    if kind == "custom":
        return [
            Phase(
                duration_s=duration_s,
                start_rate=rate,
                name=f"Custom Load ({rate:g} wallets/sec for {duration_s:g}s)",
            )
        ]
    if kind == "ramp":
        return [
            Phase(duration_s=ramp_duration_s, start_rate=1, end_rate=rate, name="Ramp-up"),
            Phase(duration_s=duration_s, start_rate=rate, name="Sustained Load"),
            Phase(duration_s=ramp_duration_s, start_rate=rate, end_rate=1, name="Cool-down"),
        ]
    if kind == "burst":
        return [
            Phase(duration_s=5, start_rate=1, name="Baseline"),
            Phase(duration_s=10, start_rate=rate * 5, name="Burst"),
            Phase(duration_s=duration_s, start_rate=0, name="Recovery"),
        ]
    if kind == "spike":
        return [
            Phase(duration_s=10, start_rate=1, name="Baseline"),
            Phase(duration_s=5, start_rate=rate * 10, name="Spike"),
            Phase(duration_s=30, start_rate=0, name="Recovery"),
            Phase(duration_s=5, start_rate=rate * 8, name="Second Spike"),
            Phase(duration_s=duration_s, start_rate=0, name="Final Recovery"),
        ]
    raise ConfigurationError(f"Unsupported phase preset: {kind}")
