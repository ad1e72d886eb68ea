from __future__ import annotations

from session_runner.protocol import PanelNodeRef
from session_runner.supervisor.state import SessionState


def make_state(clock, **kwargs) -> SessionState:
    kwargs.setdefault("max_idle_time", 5)
    return SessionState(panel_node=PanelNodeRef("127.0.0.1", 1), session_id="1", clock=clock, **kwargs)


def test_worker_log_path_is_derived_from_log_path(clock):
    state = make_state(clock, log_path="/var/log/session.log")
    assert state.worker_log_path == "/var/log/session.log.r"


def test_idle_timeout_fires_only_after_max_idle_time(clock):
    state = make_state(clock)
    clock.advance(5)
    assert not state.idle_timed_out()
    clock.advance(0.01)
    assert state.idle_timed_out()


def test_idle_timeout_suppressed_while_serializing(clock):
    state = make_state(clock)
    clock.advance(60)
    assert state.mark_serializing()
    assert not state.idle_timed_out()


def test_mark_serializing_only_succeeds_once(clock):
    state = make_state(clock)
    assert state.mark_serializing()
    assert not state.mark_serializing()
    assert state.is_serializing


def test_keep_alive_disabled_when_interval_is_zero(clock):
    state = make_state(clock, max_idle_time=10_000, keep_alive_interval_time=0, keep_alive_tolerance_time=0)
    clock.advance(5_000)
    assert not state.keep_alive_timed_out()


def test_keep_alive_fires_after_interval_plus_tolerance(clock):
    state = make_state(clock, keep_alive_interval_time=30, keep_alive_tolerance_time=10)
    clock.advance(40)
    assert not state.keep_alive_timed_out()
    clock.advance(1)
    assert state.keep_alive_timed_out()

    state.touch_keep_alive()
    assert not state.keep_alive_timed_out()


def test_touch_client_resets_both_timers(clock):
    state = make_state(clock, keep_alive_interval_time=1)
    clock.advance(3)
    state.touch_client()
    assert state.last_client_time == clock.now
    assert state.last_keep_alive_time == clock.now


def test_relay_timeout_follows_idle_budget(clock):
    state = make_state(clock, max_idle_time=100, relay_min_accept_timeout=10)
    clock.advance(30)
    assert state.relay_timeout() == 70
    clock.advance(80)
    assert state.relay_timeout() == 10


def test_relay_timeout_fixed_and_unbounded(clock):
    assert make_state(clock, relay_accept_timeout=2.5).relay_timeout() == 2.5
    assert make_state(clock, relay_accept_timeout=0).relay_timeout() is None
