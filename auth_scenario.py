"""
Register-then-login user journey.
=================================
One iteration: register a fresh identity, log in with it only if the
registration was accepted, then pause for a random think time.
"""

import asyncio
import json
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

from http_executor import RequestOutcome
from load_checks import CheckEvaluator, CheckResult, login_checks, registration_checks
from load_metrics import MetricsAggregator

logger = logging.getLogger(__name__)

REGISTER_TAG = "RegisterEndpoint"
LOGIN_TAG = "LoginEndpoint"
REGISTERED_STATUSES = (200, 201)

FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}
JSON_HEADERS = {"Content-Type": "application/json"}


@dataclass(frozen=True)
class Identity:
    """A throwaway account. Built fresh for every iteration."""
    username: str
    name: str
    email: str
    password: str
    phone: str
    language: str = "en"

    def register_form(self) -> Dict[str, str]:
        return {
            "username": self.username,
            "name": self.name,
            "email": self.email,
            "password": self.password,
            "phone": self.phone,
            "language": self.language,
        }

    def login_payload(self) -> Dict[str, str]:
        return {"email": self.email, "password": self.password}


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class IdentityFactory:
    """
    Generates identities from a millisecond timestamp and a random suffix.

    The timestamp never repeats within one factory: two identities requested
    in the same millisecond get consecutive stamps, so (username, email) pairs
    stay unique across all virtual users sharing the factory.
    """

    def __init__(self, rng: Optional[random.Random] = None, clock_ms: Callable[[], int] = _epoch_ms):
        self.rng = rng or random.Random()
        self.clock_ms = clock_ms
        self._last = 0
        self._lock = threading.Lock()

    def _next_stamp(self) -> int:
        with self._lock:
            self._last = max(int(self.clock_ms()), self._last + 1)
            return self._last

    def create(self) -> Identity:
        stamp = self._next_stamp()
        suffix = self.rng.randrange(10000)
        return Identity(
            username=f"user_{stamp}_{suffix}",
            name="Test User",
            email=f"test_{stamp}_{suffix}@test.com",
            password="test123456",
            phone=f"+1{stamp}"[:13],
            language="en",
        )


@dataclass
class IterationReport:
    identity: Identity
    registration: RequestOutcome
    registration_checks: List[CheckResult]
    login: Optional[RequestOutcome] = None
    login_checks: Optional[List[CheckResult]] = None
    pause: float = 0.0

    @property
    def registered(self) -> bool:
        return self.registration.status in REGISTERED_STATUSES

    @property
    def login_attempted(self) -> bool:
        return self.login is not None


class AuthScenario:
    """The scripted sequence one virtual user repeats every iteration."""

    def __init__(
        self,
        executor,
        evaluator: CheckEvaluator,
        metrics: MetricsAggregator,
        base_url: str,
        rng: Optional[random.Random] = None,
        identities: Optional[IdentityFactory] = None,
        register_timeout: float = 10.0,
        max_pause: float = 0.2,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.executor = executor
        self.evaluator = evaluator
        self.metrics = metrics
        self.base_url = base_url.rstrip("/")
        self.rng = rng or random.Random()
        self.identities = identities or IdentityFactory(self.rng)
        self.register_timeout = register_timeout
        self.max_pause = max_pause
        self.sleep = sleep

    async def run_iteration(self) -> IterationReport:
        identity = self.identities.create()

        # REGISTRATION
        registration = await self.executor.execute(
            "POST",
            f"{self.base_url}/auth/register",
            body=urlencode(identity.register_form()),
            headers=FORM_HEADERS,
            timeout=self.register_timeout,
            tag=REGISTER_TAG,
        )
        report = IterationReport(
            identity=identity,
            registration=registration,
            registration_checks=self.evaluator.evaluate(REGISTER_TAG, registration, registration_checks()),
        )

        # LOGIN, only for identities the service actually created
        if report.registered:
            self.metrics.record("successful_registrations", 1)
            login = await self.executor.execute(
                "POST",
                f"{self.base_url}/auth/login",
                body=json.dumps(identity.login_payload()),
                headers=JSON_HEADERS,
                tag=LOGIN_TAG,
            )
            report.login = login
            report.login_checks = self.evaluator.evaluate(LOGIN_TAG, login, login_checks())
        else:
            logger.debug("Registration for %s returned %s; skipping login",
                         identity.username, registration.status or registration.error)

        report.pause = self.rng.random() * self.max_pause
        await self.sleep(report.pause)
        return report
