"""Unit tests for pageclick.engine.cancellation -- tokens and cancellable calls."""

from __future__ import annotations

import threading
import time

import pytest

from pageclick.engine.cancellation import CancellationToken, TaskAborted, run_cancellable


class TestCancellationToken:
    """A token fires once and keeps its first reason."""

    def test_cancel_once(self):
        token = CancellationToken(epoch=3)
        assert not token.cancelled
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"
        assert token.epoch == 3

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("Stopped")
        with pytest.raises(TaskAborted) as exc_info:
            token.raise_if_cancelled()
        assert exc_info.value.reason == "Stopped"

    def test_sleep_wakes_on_cancel(self):
        token = CancellationToken()
        threading.Timer(0.05, token.cancel, args=("late",)).start()
        start = time.monotonic()
        with pytest.raises(TaskAborted, match="late"):
            token.sleep(5)
        assert time.monotonic() - start < 2

    def test_zero_sleep_still_checks(self):
        token = CancellationToken()
        token.sleep(0)
        token.cancel()
        with pytest.raises(TaskAborted):
            token.sleep(0)


class TestRunCancellable:
    """Blocking calls are abandoned on cancel or timeout."""

    def test_returns_value(self):
        assert run_cancellable(lambda: 42, CancellationToken()) == 42

    def test_propagates_exceptions(self):
        def boom():
            raise ValueError("bad")

        with pytest.raises(ValueError, match="bad"):
            run_cancellable(boom, CancellationToken())

    def test_timeout_raised_by_the_call_is_not_masked(self):
        def upstream_timeout():
            raise TimeoutError("upstream read timed out")

        start = time.monotonic()
        with pytest.raises(TimeoutError, match="upstream read timed out"):
            run_cancellable(upstream_timeout, CancellationToken(), timeout=2.0, poll_interval=0.01)
        assert time.monotonic() - start < 1

    def test_timeout_raised_by_the_call_without_deadline(self):
        def upstream_timeout():
            raise TimeoutError("read timed out")

        with pytest.raises(TimeoutError, match="read timed out"):
            run_cancellable(upstream_timeout, CancellationToken(), timeout=None, poll_interval=0.01)

    def test_already_cancelled_never_calls(self):
        token = CancellationToken()
        token.cancel()
        called = []
        with pytest.raises(TaskAborted):
            run_cancellable(lambda: called.append(1), token)
        assert called == []

    def test_cancel_while_waiting(self):
        token = CancellationToken()
        release = threading.Event()
        threading.Timer(0.05, token.cancel, args=("user abort",)).start()
        try:
            with pytest.raises(TaskAborted, match="user abort"):
                run_cancellable(lambda: release.wait(5), token, poll_interval=0.01)
        finally:
            release.set()

    def test_timeout(self):
        release = threading.Event()
        try:
            with pytest.raises(TimeoutError):
                run_cancellable(lambda: release.wait(5), CancellationToken(), timeout=0.05, poll_interval=0.01)
        finally:
            release.set()
