"""Tests for the provider boundary: payload validation, the in-memory store, and the call guard"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from matching.entities import CampaignStatus, InfluencerStatus, ProfileKind
from matching.errors import InvalidProfile, NotFound, ProviderUnavailable, Timeout
from matching.providers import (
    CampaignProvider, GuardedProvider, InfluencerProvider, InMemoryProfileStore,
    parse_campaign, parse_influencer,
)

from .conftest import make_campaign, make_influencer


class TestPayloadValidation:

    def test_campaign_camel_case_payload(self):
        campaign = parse_campaign({
            "id": "camp-9",
            "title": "Summer glow",
            "categories": ["Beauty", " SkinCare "],
            "targetAudience": {"ageMin": 18, "ageMax": 34, "locations": ["VN"]},
            "budget": {"min": 500, "max": 1000},
            "status": "active",
            "timeline": {"start": "2026-06-01T00:00:00Z", "end": "2026-07-01T00:00:00Z"},
        })
        assert campaign.niche_tags == frozenset({"beauty", "skincare"})
        assert campaign.target_audience.age_min == 18
        assert campaign.target_audience.locations == frozenset({"vn"})
        assert campaign.budget.minimum == 500
        assert campaign.status == CampaignStatus.ACTIVE
        assert campaign.timeline.start.tzinfo is not None

    def test_influencer_coercions(self):
        influencer = parse_influencer({
            "id": "inf-9",
            "contentCategories": ["beauty"],
            "engagementRate": 4.5,
            "averageRate": 700,
            "pastCollaborations": [
                {"completedAt": "2026-03-01T00:00:00", "score": 4},
                {"completedAt": "2026-01-01T00:00:00", "score": 0.9},
            ],
        })
        assert influencer.engagement_rate == pytest.approx(0.045)
        assert influencer.typical_rate == 700
        assert [o.score for o in influencer.past_collaborations] == [0.9, pytest.approx(0.8)]
        assert influencer.status == InfluencerStatus.ACTIVE
        assert influencer.audience is None

    def test_rejects_inverted_budget(self):
        with pytest.raises(InvalidProfile):
            parse_campaign({"id": "camp-x", "nicheTags": ["beauty"], "budget": {"min": 900, "max": 100}})

    def test_rejects_missing_budget(self):
        with pytest.raises(InvalidProfile):
            parse_campaign({"id": "camp-x", "nicheTags": ["beauty"]})

    def test_rejects_inverted_age_range(self):
        with pytest.raises(InvalidProfile):
            parse_influencer({"id": "inf-x", "audience": {"ageMin": 40, "ageMax": 20}})

    def test_rejects_out_of_range_engagement(self):
        with pytest.raises(InvalidProfile):
            parse_influencer({"id": "inf-x", "engagementRate": 250})


class TestInMemoryProfileStore:

    def test_implements_providers(self):
        store = InMemoryProfileStore()
        assert isinstance(store, CampaignProvider)
        assert isinstance(store, InfluencerProvider)

    def test_unknown_ids_raise_not_found(self, store):
        with pytest.raises(NotFound):
            asyncio.run(store.get_campaign("nope"))
        with pytest.raises(NotFound):
            asyncio.run(store.get_influencer("nope"))

    def test_search_by_tags(self, store):
        found = asyncio.run(store.search_influencers(frozenset({"skincare"})))
        assert sorted(i.id for i in found) == ["inf-b", "inf-c"]

    def test_updates_notify_listeners(self):
        store = InMemoryProfileStore()
        listener = AsyncMock()
        store.subscribe(listener)

        asyncio.run(store.update_influencer(make_influencer(id="inf-1")))
        asyncio.run(store.update_campaign(make_campaign(id="camp-1")))

        listener.assert_any_await("inf-1", ProfileKind.INFLUENCER)
        listener.assert_any_await("camp-1", ProfileKind.CAMPAIGN)

    def test_from_json(self, tmp_path):
        path = tmp_path / "profiles.json"
        path.write_text(json.dumps({
            "campaigns": [{"id": "camp-1", "nicheTags": ["beauty"], "budget": {"min": 1, "max": 2}}],
            "influencers": [{"id": "inf-1", "nicheTags": ["beauty"]}],
        }))
        store = InMemoryProfileStore.from_json(path)
        assert asyncio.run(store.get_campaign("camp-1")).niche_tags == frozenset({"beauty"})
        assert asyncio.run(store.get_influencer("inf-1")).id == "inf-1"


class TestGuardedProvider:

    def _guard(self, campaigns=None, influencers=None, timeout=0.05):
        return GuardedProvider(
            campaigns or AsyncMock(),
            influencers or AsyncMock(),
            timeout_seconds=timeout,
            retry_backoff_seconds=0.0,
        )

    def test_transient_failure_retried_once(self):
        campaigns = AsyncMock()
        campaigns.get_campaign.side_effect = [ProviderUnavailable("blip"), make_campaign(id="camp-1")]
        guard = self._guard(campaigns=campaigns)

        campaign = asyncio.run(guard.get_campaign("camp-1"))

        assert campaign.id == "camp-1"
        assert campaigns.get_campaign.await_count == 2

    def test_second_failure_becomes_timeout(self):
        influencers = AsyncMock()
        influencers.search_influencers.side_effect = ProviderUnavailable("store down")
        guard = self._guard(influencers=influencers)

        with pytest.raises(Timeout):
            asyncio.run(guard.search_influencers(frozenset({"beauty"})))
        assert influencers.search_influencers.await_count == 2

    def test_slow_provider_times_out(self):
        async def slow(_):
            await asyncio.sleep(1)

        influencers = AsyncMock()
        influencers.get_influencer.side_effect = slow
        guard = self._guard(influencers=influencers, timeout=0.01)

        with pytest.raises(Timeout):
            asyncio.run(guard.get_influencer("inf-1"))

    def test_not_found_is_not_retried(self):
        campaigns = AsyncMock()
        campaigns.get_campaign.side_effect = NotFound("gone")
        guard = self._guard(campaigns=campaigns)

        with pytest.raises(NotFound):
            asyncio.run(guard.get_campaign("camp-x"))
        assert campaigns.get_campaign.await_count == 1

    def test_ping_reports_each_provider(self):
        campaigns = AsyncMock()
        campaigns.ping.return_value = True
        influencers = AsyncMock()
        influencers.ping.side_effect = ProviderUnavailable("down")

        status = asyncio.run(self._guard(campaigns, influencers).ping())

        assert status == {'campaigns': True, 'influencers': False}
