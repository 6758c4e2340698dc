"""
NicheLink matching engine

Ranks influencers for a campaign (and campaigns for an influencer) with an
explainable weighted score, and explains every individual match.
"""

from .config import EngineConfig, FactorWeights
from .entities import (
    FACTOR_NAMES, AudienceProfile, BudgetRange, CampaignProfile, CampaignStatus,
    CollaborationOutcome, DateWindow, Explanation, InfluencerProfile,
    InfluencerStatus, MatchScore, ProfileKind, RankedResult, RecommendationType,
)
from .errors import (
    CacheUnavailable, ConfigurationError, EmptyCandidatePool, InvalidProfile,
    InvalidRequest, MatchingError, NotFound, Overloaded, ProviderUnavailable, Timeout,
)
from .providers import InMemoryProfileStore, parse_campaign, parse_influencer
from .recommendation_engine import RecommendationService, build_service

__version__ = "1.0.0"

__all__ = [
    'EngineConfig', 'FactorWeights',
    'FACTOR_NAMES', 'AudienceProfile', 'BudgetRange', 'CampaignProfile', 'CampaignStatus',
    'CollaborationOutcome', 'DateWindow', 'Explanation', 'InfluencerProfile',
    'InfluencerStatus', 'MatchScore', 'ProfileKind', 'RankedResult', 'RecommendationType',
    'CacheUnavailable', 'ConfigurationError', 'EmptyCandidatePool', 'InvalidProfile',
    'InvalidRequest', 'MatchingError', 'NotFound', 'Overloaded', 'ProviderUnavailable', 'Timeout',
    'InMemoryProfileStore', 'parse_campaign', 'parse_influencer',
    'RecommendationService', 'build_service',
]
