"""
Run-wide metric samples and threshold evaluation.
=================================================
Every virtual user appends samples to one shared MetricsAggregator. At the end
of the run the aggregator evaluates threshold expressions such as
``p(95)<2000`` or ``rate<0.01`` against the full sample set.
"""

import logging
import math
import operator
import re
import statistics
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from load_errors import ThresholdSyntaxError

logger = logging.getLogger(__name__)


class MetricKind(Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    RATE = "rate"
    TREND = "trend"


BUILTIN_METRICS: Dict[str, MetricKind] = {
    "http_reqs": MetricKind.COUNTER,
    "http_req_duration": MetricKind.TREND,
    "http_req_failed": MetricKind.RATE,
    "checks": MetricKind.RATE,
    "iterations": MetricKind.COUNTER,
    "iteration_duration": MetricKind.TREND,
    "successful_registrations": MetricKind.COUNTER,
    "dropped_iterations": MetricKind.COUNTER,
    "vus": MetricKind.GAUGE,
    "vus_max": MetricKind.GAUGE,
}


@dataclass(frozen=True)
class MetricSample:
    """One recorded value. Rates use 0/1, trends use milliseconds."""
    metric: str
    value: float
    offset: float
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ThresholdVerdict:
    metric: str
    expression: str
    observed: Optional[float]
    passed: bool

    @property
    def applicable(self) -> bool:
        return self.observed is not None


# =============================================================================
# STATISTICS
# =============================================================================

def percentile(values: Iterable[float], p: float) -> float:
    """
    Linear-interpolation percentile over the full sorted sample set.

    rank = p/100 * (n - 1); the result interpolates between the samples on
    either side of the rank.
    """
    ordered = sorted(values)
    if not ordered:
        raise ValueError("percentile of empty sample set")
    if not 0 <= p <= 100:
        raise ValueError(f"percentile must be within [0, 100], got {p}")

    rank = p / 100 * (len(ordered) - 1)
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return float(ordered[lower])
    return ordered[lower] + (ordered[upper] - ordered[lower]) * (rank - lower)


def rate(values: Sequence[float]) -> float:
    """Share of non-zero samples."""
    if not values:
        raise ValueError("rate of empty sample set")
    return sum(1 for v in values if v) / len(values)


# =============================================================================
# THRESHOLDS
# =============================================================================

_THRESHOLD_RE = re.compile(
    r"^\s*(?P<agg>avg|min|max|med|count|rate|value|p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\))"
    r"\s*(?P<op>===|==|!=|<=|>=|<|>)"
    r"\s*(?P<bound>-?\d+(?:\.\d+)?)\s*$"
)

_OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "===": operator.eq,
    "!=": operator.ne,
}

_SUPPORTED_AGGREGATIONS = {
    MetricKind.TREND: {"avg", "min", "max", "med", "count", "p"},
    MetricKind.RATE: {"rate", "count"},
    MetricKind.COUNTER: {"count", "rate"},
    MetricKind.GAUGE: {"value", "min", "max"},
}


@dataclass(frozen=True)
class Threshold:
    """A parsed ``<aggregation> <operator> <bound>`` expression for one metric."""
    metric: str
    expression: str
    aggregation: str
    op: str
    bound: float
    pct: Optional[float] = None

    @classmethod
    def parse(cls, metric: str, expression: str, kind: MetricKind) -> "Threshold":
        match = _THRESHOLD_RE.match(expression)
        if not match:
            raise ThresholdSyntaxError(metric, expression, "expected e.g. p(95)<2000 or rate<0.01")

        pct = match.group("pct")
        aggregation = "p" if pct is not None else match.group("agg")
        if aggregation not in _SUPPORTED_AGGREGATIONS[kind]:
            raise ThresholdSyntaxError(
                metric, expression, f"{aggregation!r} is not supported for {kind.value} metrics"
            )
        if pct is not None and not 0 <= float(pct) <= 100:
            raise ThresholdSyntaxError(metric, expression, "percentile must be within [0, 100]")

        return cls(
            metric=metric,
            expression=expression.strip(),
            aggregation=aggregation,
            op=match.group("op"),
            bound=float(match.group("bound")),
            pct=float(pct) if pct is not None else None,
        )

    def observe(self, values: Sequence[float], kind: MetricKind, duration: float) -> float:
        """Reduce the metric's samples to the value the bound is compared against."""
        agg = self.aggregation
        if agg == "p":
            return percentile(values, self.pct)
        if agg == "avg":
            return statistics.mean(values)
        if agg == "med":
            return percentile(values, 50)
        if agg == "min":
            return min(values)
        if agg == "max":
            return max(values)
        if agg == "value":
            return values[-1]
        if agg == "count":
            return sum(values) if kind == MetricKind.COUNTER else float(len(values))
        # rate
        if kind == MetricKind.COUNTER:
            return sum(values) / duration if duration > 0 else 0.0
        return rate(values)

    def check(self, observed: float) -> bool:
        return _OPERATORS[self.op](observed, self.bound)


# =============================================================================
# AGGREGATOR
# =============================================================================

class MetricsAggregator:
    """
    Shared, append-only sample store.

    ``record`` may be called from any virtual user (or any thread); a single
    lock guards every append so no sample is lost.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._started = clock()
        self._lock = threading.Lock()
        self._kinds: Dict[str, MetricKind] = dict(BUILTIN_METRICS)
        self._samples: Dict[str, List[MetricSample]] = defaultdict(list)

    def define(self, name: str, kind: MetricKind):
        with self._lock:
            existing = self._kinds.get(name)
            if existing is not None and existing != kind:
                raise ValueError(f"metric {name} already defined as {existing.value}")
            self._kinds[name] = kind

    def kind(self, name: str) -> Optional[MetricKind]:
        return self._kinds.get(name)

    def record(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        """Thread-safe append of one sample."""
        if name not in self._kinds:
            raise KeyError(f"unknown metric: {name}")
        sample = MetricSample(
            metric=name,
            value=float(value),
            offset=self._clock() - self._started,
            tags=dict(tags) if tags else {},
        )
        with self._lock:
            self._samples[name].append(sample)

    def samples(self, name: str) -> List[MetricSample]:
        with self._lock:
            return list(self._samples.get(name, ()))

    def values(self, name: str, /, **tag_filter: str) -> List[float]:
        return [
            s.value for s in self.samples(name)
            if all(s.tags.get(k) == v for k, v in tag_filter.items())
        ]

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    def evaluate(self, thresholds: Iterable[Threshold]) -> List[ThresholdVerdict]:
        """
        Evaluate thresholds against everything recorded so far.

        A metric without samples passes vacuously and reports ``observed=None``:
        there is nothing to violate the bound.
        """
        duration = self.elapsed
        verdicts = []
        for threshold in thresholds:
            kind = self._kinds[threshold.metric]
            values = self.values(threshold.metric)
            if not values:
                logger.warning(
                    "No samples for %s; threshold %s not applicable (passes)",
                    threshold.metric, threshold.expression,
                )
                verdicts.append(ThresholdVerdict(threshold.metric, threshold.expression, None, True))
                continue

            observed = threshold.observe(values, kind, duration)
            passed = threshold.check(observed)
            if not passed:
                logger.info("Threshold failed: %s %s (observed %.4f)",
                            threshold.metric, threshold.expression, observed)
            verdicts.append(ThresholdVerdict(threshold.metric, threshold.expression, observed, passed))
        return verdicts

    def summary(self) -> Dict[str, Dict[str, Any]]:
        """Per-metric statistics for reports."""
        result: Dict[str, Dict[str, Any]] = {}
        duration = self.elapsed
        for name, kind in sorted(self._kinds.items()):
            values = self.values(name)
            if not values:
                continue
            if kind == MetricKind.TREND:
                result[name] = {
                    "avg": statistics.mean(values),
                    "min": min(values),
                    "med": percentile(values, 50),
                    "max": max(values),
                    "p(90)": percentile(values, 90),
                    "p(95)": percentile(values, 95),
                    "count": len(values),
                }
            elif kind == MetricKind.RATE:
                passes = sum(1 for v in values if v)
                result[name] = {
                    "rate": passes / len(values),
                    "passes": passes,
                    "fails": len(values) - passes,
                }
            elif kind == MetricKind.COUNTER:
                total = sum(values)
                result[name] = {
                    "count": total,
                    "rate": total / duration if duration > 0 else 0.0,
                }
            else:
                result[name] = {"value": values[-1], "min": min(values), "max": max(values)}
        return result
