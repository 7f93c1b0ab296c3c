"""
Named pass/fail checks on request outcomes.
===========================================
Checks are tallied, never fatal. A predicate that blows up (missing body on a
transport failure, missing header, invalid JSON) counts as a failed check.
"""

import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

from http_executor import RequestOutcome
from load_metrics import MetricsAggregator

logger = logging.getLogger(__name__)

Predicate = Callable[[RequestOutcome], bool]


class Check(NamedTuple):
    name: str
    predicate: Predicate


class CheckResult(NamedTuple):
    name: str
    tag: Optional[str]
    passed: bool


class CheckTally:
    """Run-wide, append-only collection of check results."""

    def __init__(self):
        self._lock = threading.Lock()
        self._results: List[CheckResult] = []

    def add(self, results: Sequence[CheckResult]):
        with self._lock:
            self._results.extend(results)

    def results(self) -> List[CheckResult]:
        with self._lock:
            return list(self._results)

    def counts(self) -> Dict[Tuple[str, Optional[str]], Tuple[int, int]]:
        """(check name, request tag) -> (passes, fails), in first-seen order."""
        tally: Dict[Tuple[str, Optional[str]], List[int]] = defaultdict(lambda: [0, 0])
        for result in self.results():
            tally[(result.name, result.tag)][0 if result.passed else 1] += 1
        return {key: (passes, fails) for key, (passes, fails) in tally.items()}

    @property
    def total_passes(self) -> int:
        return sum(1 for r in self.results() if r.passed)

    @property
    def total_fails(self) -> int:
        return sum(1 for r in self.results() if not r.passed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)


class CheckEvaluator:
    """Runs every check against an outcome and records the results."""

    def __init__(self, tally: CheckTally, metrics: Optional[MetricsAggregator] = None):
        self.tally = tally
        self.metrics = metrics

    def evaluate(self, tag: Optional[str], outcome: RequestOutcome, checks: Sequence[Check]) -> List[CheckResult]:
        # No short-circuit: every check reports on every request
        results = [CheckResult(check.name, tag, _safe_call(check, outcome)) for check in checks]

        self.tally.add(results)
        if self.metrics is not None:
            for result in results:
                self.metrics.record("checks", 1 if result.passed else 0,
                                    {"check": result.name, "name": tag or ""})
        return results


def _safe_call(check: Check, outcome: RequestOutcome) -> bool:
    try:
        return bool(check.predicate(outcome))
    except Exception as e:
        logger.debug("Check %r errored on %s %s: %s: %s",
                     check.name, outcome.method, outcome.url, type(e).__name__, e)
        return False


# =============================================================================
# PREDICATES
# =============================================================================

def status_in(*codes: int) -> Predicate:
    return lambda outcome: outcome.status in codes


def faster_than(limit_ms: float) -> Predicate:
    return lambda outcome: outcome.elapsed_ms < limit_ms


def has_json_field(name: str) -> Predicate:
    """Field present in the JSON object body (a null value still counts)."""
    def predicate(outcome: RequestOutcome) -> bool:
        document = outcome.json()
        return isinstance(document, dict) and name in document
    return predicate


def content_type_contains(fragment: str) -> Predicate:
    return lambda outcome: fragment in outcome.headers["Content-Type"]


def body_smaller_than(size: int) -> Predicate:
    return lambda outcome: len(outcome.body) < size


def _response_checks() -> List[Check]:
    return [
        Check("response time OK", faster_than(2000)),
        Check("response has data", has_json_field("data")),
        Check("content-type is JSON", content_type_contains("application/json")),
        Check("response size < 10KB", body_smaller_than(10000)),
    ]


def registration_checks() -> List[Check]:
    return [Check("registration successful", status_in(201, 200))] + _response_checks()


def login_checks() -> List[Check]:
    return [Check("status is 200", status_in(200))] + _response_checks()
