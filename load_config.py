"""
Run configuration and presets.
==============================
The reference workload runs 105 virtual users, 105 iterations each, with an
8 minute ceiling and a 5 second graceful stop.
"""

import random
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from load_errors import ConfigError
from load_metrics import BUILTIN_METRICS, Threshold

DEFAULT_BASE_URL = "http://localhost:8090/api/v1"

DEFAULT_THRESHOLDS: Dict[str, List[str]] = {
    "http_req_duration": ["p(95)<2000"],
    "http_req_failed": ["rate<0.01"],
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Union[str, int, float]) -> float:
    """Parse "8m", "5s", "1m30s", "500ms" or a plain number into seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ConfigError(f"invalid duration: {value!r}")
    return total


@dataclass(frozen=True)
class RunConfig:
    """Immutable settings for one run. Built once, read-only afterwards."""
    vus: int = 105
    iterations: int = 105
    max_duration: float = 480.0
    graceful_stop: float = 5.0
    thresholds: Dict[str, List[str]] = field(default_factory=lambda: {
        name: list(exprs) for name, exprs in DEFAULT_THRESHOLDS.items()
    })
    base_url: str = DEFAULT_BASE_URL
    max_pause: float = 0.2
    register_timeout: float = 10.0
    default_timeout: float = 60.0
    seed: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.vus, int) or self.vus < 1:
            raise ConfigError(f"vus must be a positive integer, got {self.vus!r}")
        if not isinstance(self.iterations, int) or self.iterations < 1:
            raise ConfigError(f"iterations must be a positive integer, got {self.iterations!r}")
        if self.max_duration <= 0:
            raise ConfigError("max_duration must be positive")
        if self.graceful_stop < 0:
            raise ConfigError("graceful_stop cannot be negative")
        if self.max_pause < 0:
            raise ConfigError("max_pause cannot be negative")
        if not self.base_url:
            raise ConfigError("base_url is required")
        # Fail fast on bad expressions instead of at the end of an 8 minute run
        self.parsed_thresholds()

    def parsed_thresholds(self) -> List[Threshold]:
        parsed = []
        for metric, expressions in self.thresholds.items():
            kind = BUILTIN_METRICS.get(metric)
            if kind is None:
                raise ConfigError(f"threshold on unknown metric: {metric}")
            for expression in expressions:
                parsed.append(Threshold.parse(metric, expression, kind))
        return parsed

    def make_rng(self) -> random.Random:
        """Seeded generator when a seed is set, otherwise OS/time seeded."""
        return random.Random(self.seed)

    @classmethod
    def from_options(
        cls,
        preset: Optional[str] = None,
        vus: Optional[int] = None,
        iterations: Optional[int] = None,
        max_duration: Optional[Union[str, float]] = None,
        graceful_stop: Optional[Union[str, float]] = None,
        thresholds: Optional[List[str]] = None,
        base_url: Optional[str] = None,
        seed: Optional[int] = None,
    ) -> "RunConfig":
        """Build a config from raw CLI values, layered over an optional preset."""
        params: Dict[str, Any] = {}
        if preset:
            if preset not in PRESETS:
                raise ConfigError(f"unknown preset: {preset} (choose from {', '.join(PRESETS)})")
            params.update(PRESETS[preset]["params"])

        if vus is not None:
            params["vus"] = vus
        if iterations is not None:
            params["iterations"] = iterations
        if max_duration is not None:
            params["max_duration"] = max_duration
        if graceful_stop is not None:
            params["graceful_stop"] = graceful_stop
        if base_url:
            params["base_url"] = base_url
        if seed is not None:
            params["seed"] = seed

        for key in ("max_duration", "graceful_stop"):
            if key in params:
                params[key] = parse_duration(params[key])

        if thresholds:
            params["thresholds"] = merge_threshold_options(thresholds)

        return cls(**params)


def merge_threshold_options(options: List[str]) -> Dict[str, List[str]]:
    """
    Merge repeated METRIC=EXPR options over the default thresholds.
    Options for a metric replace that metric's defaults.
    """
    overrides: Dict[str, List[str]] = {}
    for option in options:
        metric, sep, expression = option.partition("=")
        metric, expression = metric.strip(), expression.strip()
        if not sep or not metric or not expression:
            raise ConfigError(f"threshold must look like METRIC=EXPR, got {option!r}")
        overrides.setdefault(metric, []).append(expression)

    merged = {name: list(exprs) for name, exprs in DEFAULT_THRESHOLDS.items()}
    merged.update(overrides)
    return merged


# =============================================================================
# PRESET CONFIGURATIONS
# =============================================================================

PRESETS: Dict[str, Dict[str, Any]] = {
    "smoke": {
        "name": "🌱 Smoke",
        "description": "One user, one iteration: verify the endpoints respond",
        "params": {
            "vus": 1,
            "iterations": 1,
            "max_duration": "1m",
            "graceful_stop": "5s",
        },
    },
    "light": {
        "name": "🏃 Light Load",
        "description": "10 users x 10 iterations",
        "params": {
            "vus": 10,
            "iterations": 10,
            "max_duration": "2m",
            "graceful_stop": "5s",
        },
    },
    "exact-users": {
        "name": "👥 Exact Users",
        "description": "Reference workload: 105 users x 105 iterations",
        "params": {
            "vus": 105,
            "iterations": 105,
            "max_duration": "8m",
            "graceful_stop": "5s",
        },
    },
    "soak": {
        "name": "🏃‍♀️ Soak",
        "description": "105 users x 1000 iterations for up to an hour",
        "params": {
            "vus": 105,
            "iterations": 1000,
            "max_duration": "60m",
            "graceful_stop": "30s",
        },
    },
}
