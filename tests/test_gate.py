"""
Single-flight gate test suite.

Run with full visibility:
    pytest tests/test_gate.py -v -s
"""

from __future__ import annotations

import threading

import pytest

from scpi_bridge.exceptions import DeviceBusyError, ScpiBridgeError
from scpi_bridge.gate import SingleFlightGate


class TestTryAcquire:

    def test_acquire_when_free(self):
        gate = SingleFlightGate()
        assert gate.try_acquire() is True
        assert gate.held

    def test_second_acquire_fails_without_error(self):
        gate = SingleFlightGate()
        assert gate.try_acquire()
        assert gate.try_acquire() is False
        assert gate.held

    def test_release_allows_next_acquire(self):
        gate = SingleFlightGate()
        assert gate.try_acquire()
        gate.release()
        assert not gate.held
        assert gate.try_acquire()

    def test_release_unheld_gate_raises(self):
        gate = SingleFlightGate()
        with pytest.raises(RuntimeError):
            gate.release()

    def test_only_one_thread_wins(self):
        gate = SingleFlightGate()
        barrier = threading.Barrier(8)
        wins = []
        lock = threading.Lock()

        def contender():
            barrier.wait()
            if gate.try_acquire():
                with lock:
                    wins.append(1)

        threads = [threading.Thread(target=contender) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=2)

        assert len(wins) == 1
        assert gate.held


class TestHold:

    def test_hold_releases_on_success(self):
        gate = SingleFlightGate()
        with gate.hold("ok"):
            assert gate.held
        assert not gate.held

    def test_hold_releases_on_exception(self):
        gate = SingleFlightGate()
        with pytest.raises(ZeroDivisionError):
            with gate.hold("failing op"):
                1 / 0
        assert not gate.held
        assert gate.try_acquire()

    def test_hold_raises_busy_when_held(self):
        gate = SingleFlightGate(name="psu")
        gate.try_acquire()
        with pytest.raises(DeviceBusyError) as exc_info:
            with gate.hold("second caller"):
                pass
        assert "busy" in str(exc_info.value).lower()
        assert "second caller" in str(exc_info.value)
        # the failed hold must not release the first holder's gate
        assert gate.held

    def test_busy_is_a_bridge_error(self):
        assert issubclass(DeviceBusyError, ScpiBridgeError)
