"""Shared fixtures for the auction tests."""

import time

import pytest

from auc_server import AuctionCoordinator


def wait_until(predicate, timeout=5.0, interval=0.01):
    """Poll predicate until it returns truthy or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeSession:
    """Stands in for ClientSession: records sent lines instead of writing to a socket."""

    def __init__(self, coordinator, name=None, fail_sends=False):
        self.coordinator = coordinator
        self.name = name
        self.alive = True
        self.fail_sends = fail_sends
        self.sent = []
        self.close_calls = 0

    def send(self, line):
        if self.fail_sends:
            self.close()
            return False
        self.sent.append(line)
        return True

    def close(self):
        self.close_calls += 1
        if not self.alive:
            return
        self.alive = False
        self.coordinator.unregister_session(self)


@pytest.fixture
def log_lines():
    return []


@pytest.fixture
def coordinator(log_lines):
    coordinator = AuctionCoordinator('127.0.0.1', 0, log=log_lines.append)
    yield coordinator
    coordinator.end_auction()


@pytest.fixture
def make_session(coordinator):
    def factory(name=None, **kwargs):
        session = FakeSession(coordinator, name, **kwargs)
        coordinator.register_session(session)
        return session
    return factory
