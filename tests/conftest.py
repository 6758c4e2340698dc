"""Shared fixtures and profile builders for the matching engine tests"""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Ensure project root is on sys.path so that `matching` and `api` resolve
CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from matching.cache import MemoryCacheBackend  # noqa: E402
from matching.config import EngineConfig  # noqa: E402
from matching.entities import (  # noqa: E402
    AudienceProfile, BudgetRange, CampaignProfile, CollaborationOutcome,
    InfluencerProfile,
)
from matching.providers import InMemoryProfileStore  # noqa: E402
from matching.recommendation_engine import RecommendationService  # noqa: E402

# Every score in the tests is computed against this instant
AS_OF = datetime(2026, 6, 1, tzinfo=timezone.utc)


class FrozenClock:
    """Wall clock the tests can move by hand"""

    def __init__(self, now: float = AS_OF.timestamp()):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_campaign(
    id="camp-1",
    tags=("beauty", "skincare"),
    budget=(500.0, 1000.0),
    audience=None,
    **kwargs,
) -> CampaignProfile:
    return CampaignProfile(
        id=id,
        niche_tags=frozenset(tags),
        target_audience=audience or AudienceProfile(),
        budget=BudgetRange(*budget),
        **kwargs,
    )


def make_influencer(
    id="inf-1",
    tags=("beauty",),
    rate=700.0,
    engagement=0.045,
    outcomes=(),
    **kwargs,
) -> InfluencerProfile:
    return InfluencerProfile(
        id=id,
        niche_tags=frozenset(tags),
        typical_rate=rate,
        engagement_rate=engagement,
        past_collaborations=tuple(
            CollaborationOutcome(AS_OF - timedelta(days=days), score) for days, score in outcomes
        ),
        **kwargs,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def config():
    return EngineConfig(scoring_workers=2, provider_retry_backoff_seconds=0.0)


@pytest.fixture
def store():
    """Beauty/skincare world: one campaign, a handful of influencers"""
    store = InMemoryProfileStore()
    store.add_campaign(make_campaign())
    store.add_campaign(make_campaign(id="camp-fitness", tags=("fitness",), budget=(200.0, 400.0)))

    store.add_influencer(make_influencer(id="inf-a", tags=("beauty",), rate=700.0, engagement=0.045))
    store.add_influencer(make_influencer(id="inf-b", tags=("beauty", "skincare"), rate=1500.0, engagement=0.06))
    store.add_influencer(make_influencer(
        id="inf-c", tags=("skincare",), rate=900.0, engagement=0.03,
        outcomes=[(30, 0.9), (400, 0.6)],
    ))
    store.add_influencer(make_influencer(id="inf-d", tags=("fitness",), rate=300.0, engagement=0.08))
    return store


@pytest.fixture
def backend(clock):
    return MemoryCacheBackend(clock=clock)


@pytest.fixture
def service(config, store, backend, clock):
    svc = RecommendationService(config, campaigns=store, influencers=store, cache_backend=backend, clock=clock)
    store.subscribe(svc.invalidate)
    yield svc
    svc.ranker.close()
