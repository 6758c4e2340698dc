"""
Feature Engineering Module

Turns a (campaign, influencer) snapshot pair into the raw factor values the
scorer weighs:

  - niche_overlap  Jaccard similarity of the niche tag sets
  - audience_fit   similarity between the campaign target and the influencer
                   audience (age-range overlap, location and interest overlap)
  - budget_fit     1.0 inside the budget range, linear decay to 0.0 at
                   2x the upper bound (or half the lower bound)
  - reliability    recency-weighted mean of past collaboration outcomes
  - engagement     raw engagement rate (normalized later, against the pool)

Anything the influencer has no history for comes back as ``None``.
"""

import logging
from datetime import datetime
from typing import FrozenSet, Iterable, List, Optional, Sequence

import numpy as np

from .entities import (
    AudienceProfile, BudgetRange, CampaignProfile, CollaborationOutcome,
    FeatureVector, InfluencerProfile,
)

logger = logging.getLogger(__name__)

# Score used when neither side gives anything to compare
NEUTRAL_SCORE = 0.5

SECONDS_PER_DAY = 86400.0


def jaccard(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    """Jaccard similarity of two sets; two empty sets have similarity 0"""
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def age_range_overlap(target: AudienceProfile, audience: AudienceProfile) -> float:
    """Intersection over union of two inclusive age ranges"""
    lo = max(target.age_min, audience.age_min)
    hi = min(target.age_max, audience.age_max)
    intersection = max(0, hi - lo + 1)
    union = max(target.age_max, audience.age_max) - min(target.age_min, audience.age_min) + 1
    if union <= 0:
        return 0.0
    return intersection / union


class FeatureEngineering:
    """
    Pure feature computation for campaign-influencer pairs.

    No I/O and no hidden state: the same snapshots and ``as_of`` always give
    the same FeatureVector.
    """

    def __init__(self, reliability_half_life_days: float = 180.0):
        self.reliability_half_life_days = reliability_half_life_days

    def compute_features(
        self,
        campaign: CampaignProfile,
        influencer: InfluencerProfile,
        as_of: datetime,
    ) -> FeatureVector:
        """Compute the raw factor values for one pair"""
        return FeatureVector(
            campaign_id=campaign.id,
            influencer_id=influencer.id,
            niche_overlap=self.compute_niche_overlap(campaign.niche_tags, influencer.niche_tags),
            audience_fit=self.compute_audience_fit(campaign.target_audience, influencer.audience),
            budget_fit=self.compute_budget_fit(influencer.typical_rate, campaign.budget),
            reliability=self.compute_reliability(influencer.past_collaborations, as_of),
            engagement_rate=self._clean_engagement(influencer.engagement_rate),
        )

    def compute_batch_features(
        self,
        campaign: CampaignProfile,
        influencers: Sequence[InfluencerProfile],
        as_of: datetime,
    ) -> List[FeatureVector]:
        return [self.compute_features(campaign, inf, as_of) for inf in influencers]

    @staticmethod
    def compute_niche_overlap(campaign_tags: FrozenSet[str], influencer_tags: FrozenSet[str]) -> float:
        return jaccard(campaign_tags, influencer_tags)

    @staticmethod
    def compute_audience_fit(
        target: AudienceProfile,
        audience: Optional[AudienceProfile],
    ) -> Optional[float]:
        """
        Similarity between the campaign's target demographic and the
        influencer's audience summary.

        Each component both sides declare is a similarity in [0, 1]; the mean
        of those components is ``1 - distance``. An influencer without an
        audience summary has no history for this factor (None).
        """
        if audience is None or audience.is_empty:
            return None

        components: List[float] = []

        if target.has_age_range and audience.has_age_range:
            components.append(age_range_overlap(target, audience))

        if target.locations and audience.locations:
            components.append(jaccard(target.locations, audience.locations))

        if target.interests and audience.interests:
            components.append(jaccard(target.interests, audience.interests))

        if not components:
            return NEUTRAL_SCORE

        return float(np.mean(components))

    @staticmethod
    def compute_budget_fit(rate: Optional[float], budget: BudgetRange) -> Optional[float]:
        """
        1.0 when the influencer's typical rate falls inside the budget range,
        decaying linearly outside it: to 0.0 at twice the upper bound, and to
        0.0 at half the lower bound.
        """
        if rate is None or rate < 0:
            return None

        if budget.minimum <= rate <= budget.maximum:
            return 1.0

        if rate > budget.maximum:
            if budget.maximum <= 0:
                return 0.0
            fit = 2.0 - rate / budget.maximum
        else:
            fit = 2.0 * rate / budget.minimum - 1.0

        return float(np.clip(fit, 0.0, 1.0))

    def compute_reliability(
        self,
        outcomes: Iterable[CollaborationOutcome],
        as_of: datetime,
    ) -> Optional[float]:
        """
        Exponentially recency-weighted mean of past outcome scores.

        An outcome ``half_life`` days old counts half as much as one finished
        at ``as_of``. Outcomes dated after ``as_of`` count as fresh.
        """
        outcomes = list(outcomes)
        if not outcomes:
            return None

        ages = np.array([
            max(0.0, (as_of - o.completed_at).total_seconds() / SECONDS_PER_DAY)
            for o in outcomes
        ])
        scores = np.clip(np.array([o.score for o in outcomes], dtype=float), 0.0, 1.0)
        weights = np.power(0.5, ages / self.reliability_half_life_days)

        total = weights.sum()
        if total <= 0:
            # every outcome is so old the weights underflowed
            return float(scores.mean())

        return float(np.dot(weights, scores) / total)

    @staticmethod
    def _clean_engagement(rate: Optional[float]) -> Optional[float]:
        if rate is None or rate < 0 or not np.isfinite(rate):
            return None
        return float(rate)
