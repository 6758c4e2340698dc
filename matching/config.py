"""
Engine configuration.

Defaults live on the dataclasses; ``EngineConfig.from_env()`` overrides them
from ``NICHELINK_*`` environment variables so the same image can be tuned per
deployment. The numeric defaults are tunable, not contractual.
"""

import os
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 1e-9


@dataclass(frozen=True)
class FactorWeights:
    """Weights of the five scoring factors; they must sum to 1.0"""
    niche_overlap: float = 0.30
    audience_fit: float = 0.25
    budget_fit: float = 0.20
    reliability: float = 0.15
    engagement: float = 0.10

    def as_dict(self) -> Dict[str, float]:
        return {
            'niche_overlap': self.niche_overlap,
            'audience_fit': self.audience_fit,
            'budget_fit': self.budget_fit,
            'reliability': self.reliability,
            'engagement': self.engagement,
        }

    def validate(self) -> None:
        weights = self.as_dict()
        negative = [name for name, w in weights.items() if w < 0]
        if negative:
            raise ConfigurationError(f"Negative factor weights: {', '.join(negative)}")

        total = sum(weights.values())
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            raise ConfigurationError(
                f"Factor weights must sum to 1.0, got {total:.6f} ({weights})"
            )


@dataclass(frozen=True)
class EngineConfig:
    """Configuration for the recommendation engine"""
    weights: FactorWeights = field(default_factory=FactorWeights)
    reliability_half_life_days: float = 180.0

    # Candidate generation
    max_candidates: int = 500

    # Ranking
    default_k: int = 10
    max_k: int = 100
    scoring_workers: int = 8
    max_niche_share: Optional[float] = None  # fairness cap, disabled by default

    # Caching
    cache_ttl_seconds: int = 3600
    time_bucket_seconds: int = 3600
    cache_namespace: str = "nichelink:match"
    redis_url: str = ""

    # Concurrency / timeouts
    max_concurrent_rankings: int = 8
    queue_timeout_seconds: float = 2.0
    request_timeout_seconds: float = 10.0
    provider_timeout_seconds: float = 2.0
    provider_retry_backoff_seconds: float = 0.1

    @property
    def weights_version(self) -> str:
        """Short stable hash of everything that changes a score"""
        payload = json.dumps(
            {
                'weights': self.weights.as_dict(),
                'half_life': self.reliability_half_life_days,
            },
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode()).hexdigest()[:12]

    def validate(self) -> None:
        self.weights.validate()

        if self.reliability_half_life_days <= 0:
            raise ConfigurationError("reliability_half_life_days must be positive")
        if self.max_candidates < 1:
            raise ConfigurationError("max_candidates must be at least 1")
        if not 1 <= self.default_k <= self.max_k:
            raise ConfigurationError("default_k must be between 1 and max_k")
        if self.scoring_workers < 1 or self.max_concurrent_rankings < 1:
            raise ConfigurationError("worker and concurrency limits must be at least 1")
        if self.time_bucket_seconds < 1 or self.cache_ttl_seconds < 1:
            raise ConfigurationError("cache ttl and time bucket must be at least 1 second")
        if self.max_niche_share is not None and not 0 < self.max_niche_share <= 1:
            raise ConfigurationError("max_niche_share must be in (0, 1]")

    @classmethod
    def from_env(cls) -> 'EngineConfig':
        env = os.environ
        default = cls()

        def _float(name: str, fallback: float) -> float:
            raw = env.get(name)
            if raw is None or raw == "":
                return fallback
            try:
                return float(raw)
            except ValueError:
                raise ConfigurationError(f"{name} must be a number, got {raw!r}")

        def _int(name: str, fallback: int) -> int:
            return int(_float(name, fallback))

        weights = FactorWeights(
            niche_overlap=_float('NICHELINK_WEIGHT_NICHE', default.weights.niche_overlap),
            audience_fit=_float('NICHELINK_WEIGHT_AUDIENCE', default.weights.audience_fit),
            budget_fit=_float('NICHELINK_WEIGHT_BUDGET', default.weights.budget_fit),
            reliability=_float('NICHELINK_WEIGHT_RELIABILITY', default.weights.reliability),
            engagement=_float('NICHELINK_WEIGHT_ENGAGEMENT', default.weights.engagement),
        )

        config = cls(
            weights=weights,
            reliability_half_life_days=_float('NICHELINK_HALF_LIFE_DAYS', default.reliability_half_life_days),
            max_candidates=_int('NICHELINK_MAX_CANDIDATES', default.max_candidates),
            default_k=_int('NICHELINK_DEFAULT_K', default.default_k),
            max_k=_int('NICHELINK_MAX_K', default.max_k),
            scoring_workers=_int('NICHELINK_SCORING_WORKERS', default.scoring_workers),
            max_niche_share=_float('NICHELINK_MAX_NICHE_SHARE', 0.0) or None,
            cache_ttl_seconds=_int('NICHELINK_CACHE_TTL', default.cache_ttl_seconds),
            time_bucket_seconds=_int('NICHELINK_TIME_BUCKET_SECONDS', default.time_bucket_seconds),
            cache_namespace=env.get('NICHELINK_CACHE_NAMESPACE', default.cache_namespace),
            redis_url=env.get('REDIS_URL', default.redis_url),
            max_concurrent_rankings=_int('NICHELINK_MAX_CONCURRENT_RANKINGS', default.max_concurrent_rankings),
            queue_timeout_seconds=_float('NICHELINK_QUEUE_TIMEOUT', default.queue_timeout_seconds),
            request_timeout_seconds=_float('NICHELINK_REQUEST_TIMEOUT', default.request_timeout_seconds),
            provider_timeout_seconds=_float('NICHELINK_PROVIDER_TIMEOUT', default.provider_timeout_seconds),
            provider_retry_backoff_seconds=_float(
                'NICHELINK_PROVIDER_RETRY_BACKOFF', default.provider_retry_backoff_seconds
            ),
        )
        logger.debug(f"Loaded engine config from environment (weights v{config.weights_version})")
        return config
