"""
Scoring Function

Weighted linear scoring of the five match factors. Unlike a learned ranker
the weights are explicit configuration, so every composite score can be
decomposed exactly into its factor contributions:

    composite = sum(weight_f * value_f)        (values in [0, 1])

Two pieces of pool context make scores comparable within one request:

  - engagement rates are min-max normalized against the candidate pool
  - a factor the influencer has no history for gets the pool median of that
    factor instead of zero, so new profiles are not pushed to the bottom
"""

import math
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import numpy as np

from .config import EngineConfig, FactorWeights
from .entities import (
    FACTOR_NAMES, CampaignProfile, FactorScore, FeatureVector,
    InfluencerProfile, MatchScore,
)
from .feature_engineering import NEUTRAL_SCORE, FeatureEngineering

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolStats:
    """Statistics of one candidate pool, computed once per ranking request"""
    engagement_min: Optional[float] = None
    engagement_max: Optional[float] = None
    medians: Dict[str, float] = field(default_factory=dict)

    def normalize_engagement(self, rate: Optional[float]) -> Optional[float]:
        if rate is None or self.engagement_min is None or self.engagement_max is None:
            return None
        spread = self.engagement_max - self.engagement_min
        if spread <= 0:
            # single distinct rate in the pool: nobody is behind anybody
            return 1.0
        return float(np.clip((rate - self.engagement_min) / spread, 0.0, 1.0))

    def median(self, factor: str) -> float:
        return self.medians.get(factor, NEUTRAL_SCORE)

    @classmethod
    def from_features(cls, vectors: Iterable[FeatureVector]) -> 'PoolStats':
        vectors = list(vectors)

        rates = [v.engagement_rate for v in vectors if v.engagement_rate is not None]
        eng_min = min(rates) if rates else None
        eng_max = max(rates) if rates else None
        partial = cls(engagement_min=eng_min, engagement_max=eng_max)

        known: Dict[str, List[float]] = {name: [] for name in FACTOR_NAMES}
        for v in vectors:
            raw = v.raw_factors()
            raw['engagement'] = partial.normalize_engagement(v.engagement_rate)
            for name, value in raw.items():
                if value is not None:
                    known[name].append(value)

        medians = {
            name: float(np.median(values))
            for name, values in known.items()
            if values
        }
        return cls(engagement_min=eng_min, engagement_max=eng_max, medians=medians)


class MatchScorer:
    """
    Deterministic, side-effect free scorer.

    Weights are validated once, here; a bad configuration never survives to
    request time.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self.config.validate()
        self.weights: FactorWeights = self.config.weights
        self.features = FeatureEngineering(self.config.reliability_half_life_days)

    @property
    def weights_version(self) -> str:
        return self.config.weights_version

    def score(
        self,
        campaign: CampaignProfile,
        influencer: InfluencerProfile,
        as_of: datetime,
        pool: Optional[PoolStats] = None,
    ) -> MatchScore:
        """
        Score one pair.

        Without pool statistics the pair is scored as a pool of one: its
        engagement normalizes to 1.0 and missing factors are neutral.
        """
        fv = self.features.compute_features(campaign, influencer, as_of)
        if pool is None:
            pool = PoolStats.from_features([fv])
        return self.score_features(fv, pool)

    def score_features(self, fv: FeatureVector, pool: PoolStats) -> MatchScore:
        weights = self.weights.as_dict()
        raw = fv.raw_factors()
        raw['engagement'] = pool.normalize_engagement(fv.engagement_rate)

        factors = []
        for name in FACTOR_NAMES:
            value = raw[name]
            imputed = value is None
            if imputed:
                value = pool.median(name)
            value = float(np.clip(value, 0.0, 1.0))
            weight = weights[name]
            factors.append(FactorScore(
                name=name,
                weight=weight,
                value=value,
                contribution=weight * value,
                imputed=imputed,
            ))

        composite = math.fsum(f.contribution for f in factors)

        return MatchScore(
            campaign_id=fv.campaign_id,
            influencer_id=fv.influencer_id,
            composite=composite,
            factors=tuple(factors),
        )
