"""Tests for cancellation tokens and deadlines."""

import threading
import time

import pytest

from autoflow.core.cancellation import CancellationToken, Deadline
from autoflow.errors import ExecutionCancelledError


class TestCancellationToken:
    def test_cancel_sets_reason(self):
        token = CancellationToken()
        token.cancel("user request")

        assert token.cancelled
        assert token.reason == "user request"
        with pytest.raises(ExecutionCancelledError, match="user request"):
            token.raise_if_cancelled()

    def test_first_reason_wins(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.reason == "first"

    def test_children_follow_parent(self):
        parent = CancellationToken()
        child = parent.child()
        grandchild = child.child()

        parent.cancel("shutdown")

        assert child.cancelled and grandchild.cancelled
        assert grandchild.reason == "shutdown"

    def test_child_cancel_leaves_parent(self):
        parent = CancellationToken()
        child = parent.child()
        child.cancel("node timeout")
        assert not parent.cancelled

    def test_child_of_cancelled_parent_starts_cancelled(self):
        parent = CancellationToken()
        parent.cancel("gone")
        assert parent.child().cancelled

    def test_wait_returns_early_on_cancel(self):
        token = CancellationToken()
        threading.Timer(0.05, token.cancel).start()

        started = time.monotonic()
        assert token.wait(5) is True
        assert time.monotonic() - started < 2

    def test_wait_times_out(self):
        assert CancellationToken().wait(0.01) is False


class TestDeadline:
    def test_unbounded(self):
        deadline = Deadline(None)
        assert deadline.remaining is None
        assert not deadline.expired
        assert deadline.cap(5) == 5

    def test_cap_uses_remaining(self):
        deadline = Deadline(1.0)
        assert deadline.cap(10) <= 1.0
        assert deadline.cap(0.1) == 0.1

    def test_expired(self):
        deadline = Deadline(0)
        assert deadline.expired
        assert deadline.remaining == 0.0
