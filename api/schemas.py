"""Request/response models for the recommendation API"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from matching.entities import Explanation, ProfileKind, RankedResult
from matching.explanation import reasons_for


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ========== Requests ==========

class GenerateRequest(CamelModel):
    campaign_id: str = Field(..., min_length=1)
    k: Optional[int] = None


class InvalidateRequest(CamelModel):
    profile_id: str = Field(..., min_length=1)
    kind: Optional[ProfileKind] = None


# ========== Responses ==========

class FactorBreakdown(CamelModel):
    name: str
    weight: float
    value: float
    contribution: float
    imputed: bool = False


class InfluencerRecommendation(CamelModel):
    influencer_id: str
    score: float
    rank: int
    reasons: List[str] = Field(default_factory=list)
    factors: List[FactorBreakdown] = Field(default_factory=list)


class CampaignRecommendation(CamelModel):
    campaign_id: str
    score: float
    rank: int
    reasons: List[str] = Field(default_factory=list)
    factors: List[FactorBreakdown] = Field(default_factory=list)


def _factors(item) -> List[FactorBreakdown]:
    return [
        FactorBreakdown(
            name=f.name, weight=f.weight, value=f.value,
            contribution=f.contribution, imputed=f.imputed,
        )
        for f in item.score.factors
    ]


class RecommendationsResponse(CamelModel):
    campaign_id: str
    k: int
    pool_size: int
    weights_version: str
    generated_at: str
    recommendations: List[InfluencerRecommendation]

    @classmethod
    def from_result(cls, result: RankedResult) -> 'RecommendationsResponse':
        return cls(
            campaign_id=result.subject_id,
            k=result.k,
            pool_size=result.pool_size,
            weights_version=result.weights_version,
            generated_at=result.generated_at.isoformat(),
            recommendations=[
                InfluencerRecommendation(
                    influencer_id=item.candidate_id,
                    score=item.score.composite,
                    rank=item.rank,
                    reasons=reasons_for(item.score),
                    factors=_factors(item),
                )
                for item in result.items
            ],
        )


class CampaignRecommendationsResponse(CamelModel):
    influencer_id: str
    k: int
    pool_size: int
    weights_version: str
    generated_at: str
    recommendations: List[CampaignRecommendation]

    @classmethod
    def from_result(cls, result: RankedResult) -> 'CampaignRecommendationsResponse':
        return cls(
            influencer_id=result.subject_id,
            k=result.k,
            pool_size=result.pool_size,
            weights_version=result.weights_version,
            generated_at=result.generated_at.isoformat(),
            recommendations=[
                CampaignRecommendation(
                    campaign_id=item.candidate_id,
                    score=item.score.composite,
                    rank=item.rank,
                    reasons=reasons_for(item.score),
                    factors=_factors(item),
                )
                for item in result.items
            ],
        )


class FactorExplanationModel(CamelModel):
    name: str
    weight: float
    raw_value: float
    contribution: float
    rationale: str
    imputed: bool = False


class ExplanationResponse(CamelModel):
    campaign_id: str
    influencer_id: str
    score: float
    rank: Optional[int] = None
    source: str
    summary: str
    strengths: List[str]
    considerations: List[str]
    factors: List[FactorExplanationModel]

    @classmethod
    def from_explanation(cls, explanation: Explanation) -> 'ExplanationResponse':
        return cls(
            campaign_id=explanation.campaign_id,
            influencer_id=explanation.influencer_id,
            score=explanation.composite,
            rank=explanation.rank,
            source=explanation.source,
            summary=explanation.summary,
            strengths=list(explanation.strengths),
            considerations=list(explanation.considerations),
            factors=[FactorExplanationModel(**f.to_dict()) for f in explanation.factors],
        )


class InvalidateResponse(CamelModel):
    profile_id: str
    invalidated: bool


class HealthResponse(CamelModel):
    status: str
    version: str
    started: bool
    cache_available: bool
    providers: Dict[str, bool]
    weights_version: str


class ErrorResponse(BaseModel):
    error: str
    message: str
    retryable: bool
