"""
Tests for auth_scenario: identities and the register -> login iteration
"""
import json
import random
from urllib.parse import parse_qs

import pytest

from auth_scenario import AuthScenario, IdentityFactory
from conftest import FakeExecutor, make_outcome, no_sleep


def _scenario(executor, evaluator, metrics, rng=None, sleep=no_sleep, **kwargs):
    return AuthScenario(
        executor,
        evaluator,
        metrics,
        base_url="http://api.test/api/v1/",
        rng=rng or random.Random(7),
        sleep=sleep,
        **kwargs,
    )


def _respond(register, login=None):
    def responder(call):
        if call.tag == "RegisterEndpoint":
            return register
        return login or make_outcome(status=200, tag="LoginEndpoint")
    return responder


class TestIdentityFactory:
    """Tests for IdentityFactory.create()"""

    def test_identity_format(self):
        factory = IdentityFactory(random.Random(1), clock_ms=lambda: 1718000000123)

        identity = factory.create()
        suffix = identity.username.rsplit("_", 1)[1]

        assert identity.username == f"user_1718000000123_{suffix}"
        assert identity.email == f"test_1718000000123_{suffix}@test.com"
        assert 0 <= int(suffix) < 10000
        assert identity.name == "Test User"
        assert identity.password == "test123456"
        assert identity.language == "en"

    def test_phone_is_truncated_to_13_characters(self):
        identity = IdentityFactory(random.Random(1), clock_ms=lambda: 1718000000123).create()
        assert identity.phone == "+117180000001"
        assert len(identity.phone) == 13

    def test_stamp_is_strictly_monotonic(self):
        """A frozen clock still yields distinct identities"""
        factory = IdentityFactory(random.Random(1), clock_ms=lambda: 1000)

        identities = [factory.create() for _ in range(500)]

        assert len({i.username for i in identities}) == 500
        assert len({i.email for i in identities}) == 500

    def test_seeded_suffixes_are_reproducible(self):
        first = IdentityFactory(random.Random(99), clock_ms=lambda: 5).create()
        second = IdentityFactory(random.Random(99), clock_ms=lambda: 5).create()
        assert first == second

    def test_payloads(self):
        identity = IdentityFactory(random.Random(1)).create()

        assert set(identity.register_form()) == {"username", "name", "email", "password", "phone", "language"}
        assert identity.login_payload() == {"email": identity.email, "password": identity.password}


class TestRunIteration:
    """Tests for AuthScenario.run_iteration()"""

    @pytest.mark.asyncio
    async def test_successful_registration_leads_to_login(self, evaluator, metrics, tally):
        executor = FakeExecutor(_respond(make_outcome(status=201)))
        scenario = _scenario(executor, evaluator, metrics)

        report = await scenario.run_iteration()

        register, login = executor.calls
        assert register.method == "POST"
        assert register.url == "http://api.test/api/v1/auth/register"
        assert register.headers == {"Content-Type": "application/x-www-form-urlencoded"}
        assert register.timeout == 10.0
        assert register.tag == "RegisterEndpoint"
        form = {k: v[0] for k, v in parse_qs(register.body).items()}
        assert form == report.identity.register_form()

        assert login.url == "http://api.test/api/v1/auth/login"
        assert login.headers == {"Content-Type": "application/json"}
        assert login.timeout is None
        assert login.tag == "LoginEndpoint"
        assert json.loads(login.body) == report.identity.login_payload()

        assert report.registered and report.login_attempted
        assert all(r.passed for r in report.registration_checks + report.login_checks)
        assert len(tally) == 10
        assert metrics.values("successful_registrations") == [1.0]

    @pytest.mark.asyncio
    async def test_rejected_registration_skips_login(self, evaluator, metrics, tally):
        executor = FakeExecutor(_respond(make_outcome(status=400, body=b'{"error": "bad"}')))

        report = await _scenario(executor, evaluator, metrics).run_iteration()

        assert [c.tag for c in executor.calls] == ["RegisterEndpoint"]
        assert not report.login_attempted
        assert report.login_checks is None
        assert [r.passed for r in report.registration_checks] == [False, True, False, True, True]
        assert all(key[1] == "RegisterEndpoint" for key in tally.counts())
        assert metrics.values("successful_registrations") == []

    @pytest.mark.asyncio
    async def test_transport_failure_fails_checks_and_skips_login(self, evaluator, metrics):
        executor = FakeExecutor(_respond(make_outcome(error="ConnectionError: ClientConnectorError")))

        report = await _scenario(executor, evaluator, metrics).run_iteration()

        assert len(executor.calls) == 1
        assert not report.login_attempted
        assert not any(r.passed for r in report.registration_checks)

    @pytest.mark.asyncio
    async def test_login_transport_failure_fails_login_checks(self, evaluator, metrics):
        executor = FakeExecutor(_respond(
            make_outcome(status=201),
            make_outcome(error="Timeout", tag="LoginEndpoint"),
        ))

        report = await _scenario(executor, evaluator, metrics).run_iteration()

        assert report.login.is_transport_error
        assert not any(r.passed for r in report.login_checks)

    @pytest.mark.asyncio
    async def test_pause_is_drawn_from_zero_to_max(self, evaluator, metrics):
        pauses = []

        async def record_sleep(delay):
            pauses.append(delay)

        executor = FakeExecutor(_respond(make_outcome(status=500)))
        scenario = _scenario(executor, evaluator, metrics, rng=random.Random(3), sleep=record_sleep)

        for _ in range(200):
            await scenario.run_iteration()

        assert len(pauses) == 200
        assert all(0 <= p < 0.2 for p in pauses)
        assert max(pauses) > 0.15

    @pytest.mark.asyncio
    async def test_seeded_runs_pause_identically(self, evaluator, metrics):
        async def run_once():
            pauses = []

            async def record_sleep(delay):
                pauses.append(delay)

            executor = FakeExecutor(_respond(make_outcome(status=201)))
            scenario = _scenario(executor, evaluator, metrics, rng=random.Random(11), sleep=record_sleep)
            for _ in range(5):
                await scenario.run_iteration()
            return pauses

        assert await run_once() == await run_once()
