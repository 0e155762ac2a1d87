"""Tests for the arrival-rate phase scheduler."""

import math

import pytest

from errors import ConfigurationError
from phases import (
    Phase,
    count_scheduled,
    expected_arrivals,
    iter_schedule,
    parse_phase,
    preset_phases,
    schedule_duration_s,
    validate_phases,
)


class TestConstantRate:
    @pytest.mark.parametrize("rate,duration", [(1, 10), (5, 4), (3, 1), (10, 2.5), (0.5, 8)])
    def test_count_is_rate_times_duration(self, rate, duration):
        starts = list(iter_schedule([Phase(duration_s=duration, start_rate=rate)]))
        assert abs(len(starts) - math.floor(rate * duration)) <= 1

    def test_fixed_gaps(self):
        starts = list(iter_schedule([Phase(duration_s=2, start_rate=4)]))
        gaps = [b.offset_ms - a.offset_ms for a, b in zip(starts, starts[1:])]
        assert all(abs(gap - 250.0) < 1e-6 for gap in gaps)
        assert starts[0].offset_ms == 0.0

    def test_zero_rate_emits_nothing(self):
        assert list(iter_schedule([Phase(duration_s=30, start_rate=0)])) == []

    def test_zero_ramp_emits_nothing(self):
        assert list(iter_schedule([Phase(duration_s=30, start_rate=0, end_rate=0)])) == []

    def test_end_rate_equal_to_start_is_constant(self):
        plain = list(iter_schedule([Phase(duration_s=3, start_rate=2)]))
        same = list(iter_schedule([Phase(duration_s=3, start_rate=2, end_rate=2)]))
        assert plain == same


class TestRamp:
    @pytest.mark.parametrize(
        "r0,r1,duration",
        [(1, 5, 10), (2, 10, 30), (10, 2, 15), (0, 5, 10), (5, 0, 10), (1, 20, 7)],
    )
    def test_total_follows_trapezoid(self, r0, r1, duration):
        starts = list(iter_schedule([Phase(duration_s=duration, start_rate=r0, end_rate=r1)]))
        assert abs(len(starts) - (r0 + r1) / 2 * duration) <= 1

    def test_scenario_ramp_one_to_five(self):
        phases = [Phase(duration_s=10, start_rate=1, end_rate=5)]
        assert count_scheduled(phases) == 30

    def test_rising_ramp_gaps_shrink_smoothly(self):
        starts = list(iter_schedule([Phase(duration_s=10, start_rate=1, end_rate=5)]))
        gaps = [b.offset_ms - a.offset_ms for a, b in zip(starts, starts[1:])]
        assert all(later < earlier for earlier, later in zip(gaps, gaps[1:]))
        assert gaps[0] < 1000.0
        assert gaps[-1] > 200.0 - 1e-6

    def test_falling_ramp_gaps_grow(self):
        starts = list(iter_schedule([Phase(duration_s=10, start_rate=5, end_rate=1)]))
        gaps = [b.offset_ms - a.offset_ms for a, b in zip(starts, starts[1:])]
        assert all(later > earlier for earlier, later in zip(gaps, gaps[1:]))

    def test_ramp_from_zero_does_not_start_at_zero_rate(self):
        starts = list(iter_schedule([Phase(duration_s=10, start_rate=0, end_rate=5)]))
        # N(t) = t^2 / 4, so the first arrival lands at t = 2s.
        assert starts[0].offset_ms == pytest.approx(2000.0)


class TestSchedule:
    def test_offsets_are_cumulative(self):
        phases = [
            Phase(duration_s=2, start_rate=1),
            Phase(duration_s=3, start_rate=0),
            Phase(duration_s=1, start_rate=2),
        ]
        starts = list(iter_schedule(phases))
        assert [s.offset_ms for s in starts] == pytest.approx([0, 1000, 5000, 5500])
        assert [s.phase_index for s in starts] == [0, 0, 2, 2]

    def test_sequence_ids_strictly_increase_across_phases(self):
        phases = [Phase(duration_s=2, start_rate=3), Phase(duration_s=2, start_rate=1, end_rate=4)]
        ids = [s.sequence_id for s in iter_schedule(phases)]
        assert ids == list(range(1, len(ids) + 1))

    def test_offsets_never_decrease(self):
        phases = [Phase(duration_s=5, start_rate=3, end_rate=9), Phase(duration_s=5, start_rate=9, end_rate=1)]
        offsets = [s.offset_ms for s in iter_schedule(phases)]
        assert offsets == sorted(offsets)
        assert offsets[-1] < 10_000

    def test_schedule_is_lazy(self):
        schedule = iter_schedule([Phase(duration_s=10**9, start_rate=1000)])
        first = next(schedule)
        assert first.sequence_id == 1

    def test_restart_by_reinvocation(self):
        phases = [Phase(duration_s=2, start_rate=2)]
        assert list(iter_schedule(phases)) == list(iter_schedule(phases))

    def test_totals(self):
        phases = [Phase(duration_s=10, start_rate=1, end_rate=5), Phase(duration_s=5, start_rate=2)]
        assert expected_arrivals(phases) == pytest.approx(40.0)
        assert schedule_duration_s(phases) == 15.0


class TestValidation:
    def test_empty_phase_list(self):
        with pytest.raises(ConfigurationError):
            validate_phases([])

    def test_collects_every_problem(self):
        with pytest.raises(ConfigurationError) as excinfo:
            validate_phases([Phase(duration_s=0, start_rate=-1), Phase(duration_s=5, start_rate=1, end_rate=-2)])
        assert len(excinfo.value.problems) == 3

    def test_parse_phase(self):
        assert parse_phase("30:2:10:Ramp-up") == Phase(30, 2, 10, "Ramp-up")
        assert parse_phase("10:5") == Phase(10, 5)
        assert parse_phase("10:5::Steady") == Phase(10, 5, None, "Steady")

    @pytest.mark.parametrize("spec", ["", "10", "x:1", "0:1", "10:-1", "10:1:abc"])
    def test_parse_phase_rejects(self, spec):
        with pytest.raises(ConfigurationError):
            parse_phase(spec)

    @pytest.mark.parametrize("kind", ["custom", "ramp", "burst", "spike"])
    def test_presets_are_valid(self, kind):
        phases = preset_phases(kind, rate=4, duration_s=20)
        validate_phases(phases)
        assert count_scheduled(phases) > 0

    def test_unknown_preset(self):
        with pytest.raises(ConfigurationError):
            preset_phases("soak", rate=1, duration_s=1)
