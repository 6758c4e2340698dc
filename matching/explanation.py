"""
Explanation Builder

Turns a MatchScore into a human readable breakdown: one rationale line per
factor plus a short summary, e.g.

    This influencer scored 78.5% compatibility. Strong points: Content
    Category Match: 100.0%, Budget Compatibility: 100.0%. Areas for
    consideration: Engagement Quality: 20.0%.

The numbers in an explanation are always the ones the ranking used; the
builder never re-weighs anything.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from .entities import (
    CampaignProfile, Explanation, FactorExplanation, FactorScore,
    InfluencerProfile, MatchScore,
)
from .scoring import MatchScorer, PoolStats

logger = logging.getLogger(__name__)

FACTOR_LABELS: Dict[str, str] = {
    'niche_overlap': 'Content Category Match',
    'audience_fit': 'Audience Alignment',
    'budget_fit': 'Budget Compatibility',
    'reliability': 'Historical Performance',
    'engagement': 'Engagement Quality',
}

STRENGTH_THRESHOLD = 0.7
CONSIDERATION_THRESHOLD = 0.4


# factor -> (threshold, reason)
REASONS: Dict[str, Tuple[float, str]] = {
    'niche_overlap': (0.7, 'Excellent content category match'),
    'audience_fit': (0.7, 'Strong audience demographic alignment'),
    'budget_fit': (0.8, 'Cost-effective within budget'),
    'engagement': (0.8, 'High engagement quality'),
    'reliability': (0.7, 'Proven track record'),
}


def _pct(value: float) -> str:
    return f"{value * 100:.1f}%"


def reasons_for(score: MatchScore) -> List[str]:
    """Short reasons shown next to a recommendation; imputed factors never count"""
    reasons = []
    for factor in score.factors:
        threshold, reason = REASONS[factor.name]
        if not factor.imputed and factor.value > threshold:
            reasons.append(reason)
    return reasons


class ExplanationBuilder:
    """Formats match scores, and scores single pairs on demand"""

    def __init__(self, scorer: MatchScorer):
        self.scorer = scorer

    def score_pair(
        self,
        campaign: CampaignProfile,
        influencer: InfluencerProfile,
        pool: Sequence[InfluencerProfile],
        as_of: datetime,
    ) -> MatchScore:
        """
        Score one pair in the context of the campaign's candidate pool.

        The influencer is added to the pool statistics even if the prefilters
        would have dropped it, so the pair is always explainable.
        """
        members = {inf.id: inf for inf in pool}
        members[influencer.id] = influencer
        vectors = self.scorer.features.compute_batch_features(
            campaign, [members[i] for i in sorted(members)], as_of,
        )
        stats = PoolStats.from_features(vectors)
        target = next(v for v in vectors if v.influencer_id == influencer.id)
        return self.scorer.score_features(target, stats)

    def build(
        self,
        score: MatchScore,
        campaign: Optional[CampaignProfile] = None,
        influencer: Optional[InfluencerProfile] = None,
        source: str = "computed",
        rank: Optional[int] = None,
    ) -> Explanation:
        factors = tuple(
            FactorExplanation(
                name=f.name,
                weight=f.weight,
                raw_value=f.value,
                contribution=f.contribution,
                rationale=self._rationale(f, campaign, influencer),
                imputed=f.imputed,
            )
            for f in score.factors
        )

        strengths: List[str] = []
        considerations: List[str] = []
        for f in score.factors:
            label = f"{FACTOR_LABELS.get(f.name, f.name)}: {_pct(f.value)}"
            if f.value > STRENGTH_THRESHOLD:
                strengths.append(label)
            elif f.value < CONSIDERATION_THRESHOLD:
                considerations.append(label)

        summary = f"This influencer scored {_pct(score.composite)} compatibility."
        if strengths:
            summary += f" Strong points: {', '.join(strengths)}."
        if considerations:
            summary += f" Areas for consideration: {', '.join(considerations)}."
        if influencer is not None and influencer.is_verified:
            summary += " Verified influencer profile."

        return Explanation(
            campaign_id=score.campaign_id,
            influencer_id=score.influencer_id,
            composite=score.composite,
            factors=factors,
            summary=summary,
            source=source,
            strengths=tuple(strengths),
            considerations=tuple(considerations),
            rank=rank,
        )

    def _rationale(
        self,
        factor: FactorScore,
        campaign: Optional[CampaignProfile],
        influencer: Optional[InfluencerProfile],
    ) -> str:
        if factor.imputed:
            return f"No history on file; pool median {_pct(factor.value)} used"

        if campaign is None or influencer is None:
            return f"{FACTOR_LABELS.get(factor.name, factor.name)} {_pct(factor.value)}"

        if factor.name == 'niche_overlap':
            shared = sorted(campaign.niche_tags & influencer.niche_tags)
            if not shared:
                return "No niche tags in common"
            return (
                f"Shares {len(shared)} of {len(campaign.niche_tags | influencer.niche_tags)} "
                f"niche tags ({', '.join(shared)})"
            )

        if factor.name == 'audience_fit':
            return f"Audience matches {_pct(factor.value)} of the campaign target"

        if factor.name == 'budget_fit':
            rate = influencer.typical_rate
            budget = campaign.budget
            if budget.minimum <= rate <= budget.maximum:
                return f"Typical rate {rate:,.0f} is within budget {budget.minimum:,.0f}-{budget.maximum:,.0f}"
            side = "above" if rate > budget.maximum else "below"
            return f"Typical rate {rate:,.0f} is {side} budget {budget.minimum:,.0f}-{budget.maximum:,.0f}"

        if factor.name == 'reliability':
            n = len(influencer.past_collaborations)
            return f"{n} past collaboration{'s' if n != 1 else ''}, recency-weighted outcome {_pct(factor.value)}"

        if factor.name == 'engagement':
            return (
                f"Engagement rate {influencer.engagement_rate:.2%}, "
                f"{_pct(factor.value)} of the candidate pool's range"
            )

        return _pct(factor.value)
