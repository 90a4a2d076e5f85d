"""
pytest configuration for the alumni worker test suite
"""

import inspect
import json

import fakeredis
import httpx
import pytest

from alumni_worker.config import Settings
from alumni_worker.jobs.backend import BackendClient
from alumni_worker.queue.idempotency import IdempotencyGuard
from alumni_worker.queue.job_queue import JobQueue
from alumni_worker.queue.registry import HandlerRegistry

BACKEND_URL = "http://backend.test"


class FakeClock:
    """Settable stand-in for time.time()."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePlatformAPI:
    """
    Records requests and answers them from a route table.

    Routes map ``(method, path)`` to a JSON body, a ``(status, body)`` tuple or
    a callable taking the request. A callable may raise an httpx transport
    error or be a coroutine function returning an ``httpx.Response``.
    Unrouted requests get 404.
    """

    def __init__(self):
        self.routes = {}
        self.requests: list[httpx.Request] = []

    def route(self, method: str, path: str, response) -> None:
        self.routes[(method, path)] = response

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def body(self, request: httpx.Request) -> dict:
        return json.loads(request.content) if request.content else {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.routes.get((request.method, request.url.path))
        if response is None:
            return httpx.Response(404, json={"error": "not found"})
        if callable(response):
            response = response(request)
            if isinstance(response, httpx.Response) or inspect.isawaitable(response):
                return response
        if isinstance(response, tuple):
            status, body = response
            return httpx.Response(status, json=body)
        return httpx.Response(200, json=response)


@pytest.fixture
def settings():
    return Settings(
        redis_url="redis://fake:6379",
        backend_url=BACKEND_URL,
        service_token="test-token",
        worker_queues="webhook-processing,lead-routing,email-sending,crm-retry,default",
        poll_interval_seconds=0.01,
        visibility_grace_seconds=60,
    )


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    return fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return HandlerRegistry()


@pytest.fixture
def queue(redis_client, registry, settings, clock):
    return JobQueue(client=redis_client, registry=registry, settings=settings, clock=clock)


@pytest.fixture
def guard(redis_client):
    return IdempotencyGuard(redis_client, default_ttl=3600)


@pytest.fixture
def platform_api():
    return FakePlatformAPI()


@pytest.fixture
def backend(settings, platform_api):
    return BackendClient(settings, transport=httpx.MockTransport(platform_api))
