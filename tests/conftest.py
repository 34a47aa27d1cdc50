import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from broadcaster import Broadcaster
from config import Settings
from database import get_session_factory
from fakes import FakeClock, FakeFeedClient, FakePaymentClient
from token_store import TokenStore
from vote_store import VoteStore


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        rug_check_enabled=False,
        run_background_tasks=False,
    )


@pytest.fixture
def session_factory(settings):
    return get_session_factory(settings.database_url)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token_store(session_factory, clock):
    return TokenStore(session_factory, clock=clock)


@pytest.fixture
def vote_store(session_factory, clock):
    return VoteStore(session_factory, clock=clock)


@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest.fixture
def feed_client():
    return FakeFeedClient(boosts=[])


@pytest.fixture
def payment_client():
    return FakePaymentClient()
