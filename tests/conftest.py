"""Shared fixtures for the auth load test suite"""
import asyncio
import json
from types import SimpleNamespace
from typing import Callable, List, Optional

import pytest
from aiohttp import web

from http_executor import RequestOutcome
from load_checks import CheckEvaluator, CheckTally
from load_metrics import MetricsAggregator


def make_outcome(
    status: Optional[int] = 201,
    body: Optional[bytes] = b'{"data": {"id": 1}}',
    headers: Optional[dict] = None,
    elapsed_ms: Optional[float] = 500.0,
    tag: str = "RegisterEndpoint",
    error: Optional[str] = None,
) -> RequestOutcome:
    """Build an outcome the way the executor would."""
    if error is not None:
        return RequestOutcome.transport_failure("POST", "http://test/auth/register", error, tag)
    return RequestOutcome(
        method="POST",
        url="http://test/auth/register",
        tag=tag,
        status=status,
        headers={"Content-Type": "application/json; charset=utf-8"} if headers is None else headers,
        body=body,
        elapsed_ms=elapsed_ms,
    )


class FakeExecutor:
    """Stands in for RequestExecutor; answers with ``responder(call)``."""

    def __init__(self, responder: Callable[[SimpleNamespace], RequestOutcome]):
        self.responder = responder
        self.calls: List[SimpleNamespace] = []

    async def execute(self, method, url, body=None, headers=None, timeout=None, tag=None):
        call = SimpleNamespace(method=method, url=url, body=body, headers=headers, timeout=timeout, tag=tag)
        self.calls.append(call)
        await asyncio.sleep(0)
        return self.responder(call)

    def calls_for(self, tag: str) -> List[SimpleNamespace]:
        return [c for c in self.calls if c.tag == tag]


async def no_sleep(_delay: float):
    await asyncio.sleep(0)


def make_auth_app(fail_login: bool = False, register_status: int = 201) -> web.Application:
    """Minimal registration/login API mounted under /api/v1."""
    users = {}

    async def register(request):
        form = await request.post()
        if register_status not in (200, 201):
            return web.json_response({"error": "rejected"}, status=register_status)
        if form["email"] in users:
            return web.json_response({"error": "email taken"}, status=409)
        users[form["email"]] = form["password"]
        return web.json_response({"data": {"username": form["username"]}}, status=register_status)

    async def login(request):
        payload = json.loads(await request.text())
        if fail_login:
            return web.json_response({"error": "internal"}, status=500)
        if users.get(payload["email"]) != payload["password"]:
            return web.json_response({"error": "invalid credentials"}, status=401)
        return web.json_response({"data": {"token": "token-" + payload["email"]}})

    app = web.Application()
    app["users"] = users
    app.router.add_post("/api/v1/auth/register", register)
    app.router.add_post("/api/v1/auth/login", login)
    return app


@pytest.fixture
def metrics():
    return MetricsAggregator()


@pytest.fixture
def tally():
    return CheckTally()


@pytest.fixture
def evaluator(tally, metrics):
    return CheckEvaluator(tally, metrics)
