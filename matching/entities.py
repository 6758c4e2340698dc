"""
Campaign-Influencer Matching Entities

The engine works on immutable snapshots of the profiles owned by the
campaign/influencer data store, and produces per-request value objects:

    CampaignProfile / InfluencerProfile   read-only inputs (one snapshot per request)
    FeatureVector                         raw factor values for one pair
    MatchScore                            composite score + weighted factor breakdown
    RankedResult                          top-K list for one subject
    Explanation                           human readable breakdown of one pair

Everything that goes into the result cache knows how to turn itself into a
plain dict (``to_dict``) and back (``from_dict``).
"""

import math
from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple
from datetime import datetime, timezone


FACTOR_NAMES: Tuple[str, ...] = (
    'niche_overlap',
    'audience_fit',
    'budget_fit',
    'reliability',
    'engagement',
)

SCORE_TOLERANCE = 1e-6


class CampaignStatus(Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class InfluencerStatus(Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class RecommendationType(Enum):
    """Direction of a recommendation request"""
    INFLUENCERS_FOR_CAMPAIGN = "influencers_for_campaign"
    CAMPAIGNS_FOR_INFLUENCER = "campaigns_for_influencer"


class ProfileKind(Enum):
    CAMPAIGN = "campaign"
    INFLUENCER = "influencer"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class DateWindow:
    """Closed time window; a missing bound means open-ended on that side"""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def overlaps(self, other: Optional['DateWindow']) -> bool:
        if other is None:
            return True
        if self.end is not None and other.start is not None and self.end < other.start:
            return False
        if other.end is not None and self.start is not None and other.end < self.start:
            return False
        return True


@dataclass(frozen=True)
class BudgetRange:
    minimum: float
    maximum: float


@dataclass(frozen=True)
class AudienceProfile:
    """Audience descriptor, used both as a campaign target and as an
    influencer's audience summary. Empty fields mean "not declared"."""
    age_min: Optional[int] = None
    age_max: Optional[int] = None
    locations: FrozenSet[str] = frozenset()
    interests: FrozenSet[str] = frozenset()

    @property
    def has_age_range(self) -> bool:
        return self.age_min is not None and self.age_max is not None

    @property
    def is_empty(self) -> bool:
        return not self.has_age_range and not self.locations and not self.interests


@dataclass(frozen=True)
class CollaborationOutcome:
    """Outcome score of one finished collaboration, normalized to [0, 1]"""
    completed_at: datetime
    score: float


@dataclass(frozen=True)
class CampaignProfile:
    """Campaign snapshot as seen by the engine"""
    id: str
    niche_tags: FrozenSet[str]
    target_audience: AudienceProfile
    budget: BudgetRange
    status: CampaignStatus = CampaignStatus.ACTIVE
    content_formats: FrozenSet[str] = frozenset()
    timeline: Optional[DateWindow] = None
    title: str = ""
    brand_name: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class InfluencerProfile:
    """Influencer (KOC) snapshot as seen by the engine"""
    id: str
    niche_tags: FrozenSet[str]
    audience: Optional[AudienceProfile] = None
    engagement_rate: Optional[float] = None
    typical_rate: Optional[float] = None
    avg_turnaround_days: Optional[float] = None
    availability: Optional[DateWindow] = None
    past_collaborations: Tuple[CollaborationOutcome, ...] = ()
    status: InfluencerStatus = InfluencerStatus.ACTIVE
    display_name: str = ""
    location: str = ""
    is_verified: bool = False


@dataclass(frozen=True)
class FeatureVector:
    """Raw factor values for one (campaign, influencer) pair.

    ``None`` means the influencer has no history for that factor; the scorer
    fills it with the pool median. ``engagement_rate`` is the raw rate, it is
    normalized against the candidate pool when the pair is scored.
    """
    campaign_id: str
    influencer_id: str
    niche_overlap: float
    audience_fit: Optional[float] = None
    budget_fit: Optional[float] = None
    reliability: Optional[float] = None
    engagement_rate: Optional[float] = None

    def raw_factors(self) -> Dict[str, Optional[float]]:
        return {
            'niche_overlap': self.niche_overlap,
            'audience_fit': self.audience_fit,
            'budget_fit': self.budget_fit,
            'reliability': self.reliability,
            'engagement': self.engagement_rate,
        }


@dataclass(frozen=True)
class FactorScore:
    name: str
    weight: float
    value: float
    contribution: float
    imputed: bool = False

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'weight': self.weight,
            'value': self.value,
            'contribution': self.contribution,
            'imputed': self.imputed,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'FactorScore':
        return cls(
            name=data['name'],
            weight=float(data['weight']),
            value=float(data['value']),
            contribution=float(data['contribution']),
            imputed=bool(data.get('imputed', False)),
        )


@dataclass(frozen=True)
class MatchScore:
    """Composite score plus its ordered factor breakdown.

    The weighted contributions always add up to ``composite``.
    """
    campaign_id: str
    influencer_id: str
    composite: float
    factors: Tuple[FactorScore, ...]

    def factor(self, name: str) -> FactorScore:
        for f in self.factors:
            if f.name == name:
                return f
        raise KeyError(name)

    def contribution_error(self) -> float:
        return abs(math.fsum(f.contribution for f in self.factors) - self.composite)

    def to_dict(self) -> Dict:
        return {
            'campaign_id': self.campaign_id,
            'influencer_id': self.influencer_id,
            'composite': self.composite,
            'factors': [f.to_dict() for f in self.factors],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'MatchScore':
        return cls(
            campaign_id=data['campaign_id'],
            influencer_id=data['influencer_id'],
            composite=float(data['composite']),
            factors=tuple(FactorScore.from_dict(f) for f in data['factors']),
        )


@dataclass(frozen=True)
class RankedItem:
    candidate_id: str
    rank: int
    score: MatchScore

    def to_dict(self) -> Dict:
        return {
            'candidate_id': self.candidate_id,
            'rank': self.rank,
            'score': self.score.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'RankedItem':
        return cls(
            candidate_id=data['candidate_id'],
            rank=int(data['rank']),
            score=MatchScore.from_dict(data['score']),
        )


@dataclass(frozen=True)
class RankedResult:
    """Top-K list for one subject (a campaign, or an influencer)"""
    subject_id: str
    kind: RecommendationType
    k: int
    items: Tuple[RankedItem, ...] = ()
    pool_size: int = 0
    weights_version: str = ""
    generated_at: datetime = field(default_factory=utcnow)

    @property
    def candidate_ids(self) -> List[str]:
        return [item.candidate_id for item in self.items]

    def find(self, candidate_id: str) -> Optional[RankedItem]:
        for item in self.items:
            if item.candidate_id == candidate_id:
                return item
        return None

    def to_dict(self) -> Dict:
        return {
            'subject_id': self.subject_id,
            'kind': self.kind.value,
            'k': self.k,
            'items': [item.to_dict() for item in self.items],
            'pool_size': self.pool_size,
            'weights_version': self.weights_version,
            'generated_at': self.generated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'RankedResult':
        return cls(
            subject_id=data['subject_id'],
            kind=RecommendationType(data['kind']),
            k=int(data['k']),
            items=tuple(RankedItem.from_dict(i) for i in data['items']),
            pool_size=int(data.get('pool_size', 0)),
            weights_version=data.get('weights_version', ''),
            generated_at=_parse_dt(data.get('generated_at')) or utcnow(),
        )

    @classmethod
    def empty(cls, subject_id: str, kind: RecommendationType, k: int,
              weights_version: str = "", generated_at: Optional[datetime] = None) -> 'RankedResult':
        return cls(
            subject_id=subject_id, kind=kind, k=k, weights_version=weights_version,
            generated_at=generated_at or utcnow(),
        )


@dataclass(frozen=True)
class FactorExplanation:
    name: str
    weight: float
    raw_value: float
    contribution: float
    rationale: str
    imputed: bool = False

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'weight': self.weight,
            'raw_value': self.raw_value,
            'contribution': self.contribution,
            'rationale': self.rationale,
            'imputed': self.imputed,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'FactorExplanation':
        return cls(
            name=data['name'],
            weight=float(data['weight']),
            raw_value=float(data['raw_value']),
            contribution=float(data['contribution']),
            rationale=data['rationale'],
            imputed=bool(data.get('imputed', False)),
        )


@dataclass(frozen=True)
class Explanation:
    """Human readable decomposition of one match"""
    campaign_id: str
    influencer_id: str
    composite: float
    factors: Tuple[FactorExplanation, ...]
    summary: str
    source: str = "computed"  # computed | cache
    strengths: Tuple[str, ...] = ()
    considerations: Tuple[str, ...] = ()
    rank: Optional[int] = None

    def to_dict(self) -> Dict:
        return {
            'campaign_id': self.campaign_id,
            'influencer_id': self.influencer_id,
            'composite': self.composite,
            'factors': [f.to_dict() for f in self.factors],
            'summary': self.summary,
            'source': self.source,
            'strengths': list(self.strengths),
            'considerations': list(self.considerations),
            'rank': self.rank,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Explanation':
        return cls(
            campaign_id=data['campaign_id'],
            influencer_id=data['influencer_id'],
            composite=float(data['composite']),
            factors=tuple(FactorExplanation.from_dict(f) for f in data['factors']),
            summary=data['summary'],
            source=data.get('source', 'computed'),
            strengths=tuple(data.get('strengths', ())),
            considerations=tuple(data.get('considerations', ())),
            rank=data.get('rank'),
        )
