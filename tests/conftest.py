"""
Shared fixtures: a throwaway SQLite database per test, a scripted HTTP
transport for the API client and a controllable monotonic clock.
"""
import json
from urllib.parse import urlparse

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from outreach_sync.models.base import enable_sqlite_savepoints, init_db
from outreach_sync.models.connection import ApiConnection


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'outreach_sync_test.db'}",
        connect_args={"check_same_thread": False},
        poolclass=NullPool,
    )
    enable_sqlite_savepoints(engine)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


class FakeTransport:
    """
    Stand-in for the aiohttp session.

    `routes` maps a path suffix to either a (status, body) tuple, a list of
    them (consumed in order, the last one repeats) or a callable
    (params) -> (status, body). Bodies that aren't strings are JSON-encoded.
    """

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.calls = []

    async def __call__(self, method, url, headers, params):
        path = urlparse(url).path
        self.calls.append({"method": method, "path": path, "headers": dict(headers), "params": dict(params)})
        for suffix, route in self.routes.items():
            if path.endswith(suffix):
                return self._respond(route, params)
        return 404, json.dumps({"error": f"no route for {path}"})

    def _respond(self, route, params):
        if callable(route):
            status, body = route(params)
        elif isinstance(route, list):
            status, body = route.pop(0) if len(route) > 1 else route[0]
        else:
            status, body = route
        if not isinstance(body, str):
            body = json.dumps(body)
        return status, body

    def paths(self):
        return [call["path"] for call in self.calls]


class FakeClock:
    def __init__(self, start=0.0):
        self.value = start

    def __call__(self):
        return self.value

    def advance(self, seconds):
        self.value += seconds


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def make_connection(session_factory):
    def _make(platform, workspace_id=1, api_key="test-key", api_shape=None, **values):
        session = session_factory()
        try:
            fields = {"is_active": True, "sync_status": "idle"}
            fields.update(values)
            connection = ApiConnection(
                workspace_id=workspace_id,
                platform=platform,
                api_key=api_key,
                api_shape=api_shape,
                **fields,
            )
            session.add(connection)
            session.commit()
            return connection.id
        finally:
            session.close()
    return _make
