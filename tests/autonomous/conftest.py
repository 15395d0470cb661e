"""Shared fixtures for the autonomous tests."""

import pytest

from fakes import Clock, FakeCode, FakeDeployer, FakeVCS, RecordingSink
from yolo.autonomous.database import StateStore
from yolo.notifications import NotificationDispatcher


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(tmp_path):
    store = StateStore(tmp_path / "state.db")
    store.initialize_sync()
    yield store
    store._close_sync()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def notifier(sink):
    return NotificationDispatcher([sink])


@pytest.fixture
def vcs():
    return FakeVCS()


@pytest.fixture
def code(vcs):
    return FakeCode(vcs)


@pytest.fixture
def deployer():
    return FakeDeployer()
