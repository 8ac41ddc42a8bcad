"""Tests for the per-session probe correlator."""

import pytest

from chatload.session.probes import AbandonedProbe, ProbeCorrelator
from tests.fakes import FakeClock


class TestProbeCorrelator:
    def test_resolve_returns_rtt_in_ms(self):
        clock = FakeClock()
        probes = ProbeCorrelator(clock)
        probes.register("n1")
        clock.advance(0.25)
        assert probes.resolve("n1") == pytest.approx(250.0)
        assert len(probes) == 0

    def test_resolve_is_at_most_once(self):
        probes = ProbeCorrelator(FakeClock())
        probes.register("n1", sent_at=10.0)
        assert probes.resolve("n1", now=10.5) == pytest.approx(500.0)
        assert probes.resolve("n1", now=11.0) is None
        assert probes.resolved == 1

    def test_unknown_nonce_not_found(self):
        assert ProbeCorrelator().resolve("missing") is None

    def test_rtt_never_negative(self):
        probes = ProbeCorrelator()
        probes.register("n1", sent_at=5.0)
        assert probes.resolve("n1", now=4.0) == 0.0

    def test_collision_overwrites_send_time(self):
        probes = ProbeCorrelator()
        assert probes.register("n1", sent_at=1.0) is True
        assert probes.register("n1", sent_at=2.0) is False
        assert probes.registered == 1
        assert probes.resolve("n1", now=3.0) == pytest.approx(1000.0)

    def test_minted_nonces_are_unique_within_a_millisecond(self):
        probes = ProbeCorrelator()
        nonces = {probes.mint_nonce(1704067200000) for _ in range(100)}
        assert len(nonces) == 100


class TestDrain:
    def test_drain_reports_abandoned_with_age(self):
        probes = ProbeCorrelator()
        probes.register("a", sent_at=1.0)
        probes.register("b", sent_at=2.0)
        probes.register("c", sent_at=3.0)
        probes.resolve("b", now=2.5)

        abandoned = probes.drain(now=4.0)

        assert sorted(abandoned, key=lambda p: p.nonce) == [
            AbandonedProbe("a", pytest.approx(3000.0)),
            AbandonedProbe("c", pytest.approx(1000.0)),
        ]
        assert probes.registered == probes.resolved + len(abandoned)

    def test_drain_is_not_reentrant(self):
        probes = ProbeCorrelator()
        probes.drain()
        with pytest.raises(RuntimeError):
            probes.drain()

    def test_no_registration_after_freeze(self):
        probes = ProbeCorrelator()
        probes.freeze()
        with pytest.raises(RuntimeError):
            probes.register("late")
        assert probes.frozen
