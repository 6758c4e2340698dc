"""Tests for the ranker"""

import asyncio

from matching.candidates import CandidatePool
from matching.config import EngineConfig, FactorWeights
from matching.entities import RecommendationType
from matching.ranking import Ranker
from matching.scoring import MatchScorer

from .conftest import AS_OF, make_campaign, make_influencer


def _pool(subject_id, influencers):
    return CandidatePool(subject_id=subject_id, candidates=tuple(sorted(influencers, key=lambda i: i.id)))


class TestRanker:

    def setup_method(self):
        self.ranker = Ranker(MatchScorer(EngineConfig()), workers=3)
        self.campaign = make_campaign()
        self.influencers = [
            make_influencer(
                id=f"inf-{i:02d}",
                tags=("beauty", "skincare") if i % 3 == 0 else ("beauty",),
                rate=400 + 90 * i,
                engagement=0.01 + 0.004 * (i % 7),
                outcomes=[(15 * i, 0.3 + 0.05 * (i % 10))] if i % 4 else (),
            )
            for i in range(20)
        ]
        self.pool = _pool(self.campaign.id, self.influencers)

    def teardown_method(self):
        self.ranker.close()

    def test_order_is_non_increasing(self):
        result = self.ranker.rank(self.campaign, self.pool, 10, AS_OF)
        composites = [item.score.composite for item in result.items]
        assert composites == sorted(composites, reverse=True)
        assert [item.rank for item in result.items] == list(range(1, 11))
        assert result.kind == RecommendationType.INFLUENCERS_FOR_CAMPAIGN
        assert result.pool_size == 20

    def test_rerun_is_identical(self):
        first = self.ranker.rank(self.campaign, self.pool, 10, AS_OF)
        second = self.ranker.rank(self.campaign, self.pool, 10, AS_OF)
        assert first == second
        assert first.to_dict() == second.to_dict()
        assert first.generated_at == AS_OF

    def test_ranks_again_after_close(self):
        self.ranker.rank(self.campaign, self.pool, 5, AS_OF)
        self.ranker.close()
        result = self.ranker.rank(self.campaign, self.pool, 5, AS_OF)
        assert len(result.items) == 5

    def test_async_matches_blocking(self):
        blocking = self.ranker.rank(self.campaign, self.pool, 10, AS_OF)
        concurrent = asyncio.run(self.ranker.rank_async(self.campaign, self.pool, 10, AS_OF))
        assert blocking.items == concurrent.items

    def test_k_only_truncates(self):
        top5 = self.ranker.rank(self.campaign, self.pool, 5, AS_OF)
        top50 = self.ranker.rank(self.campaign, self.pool, 50, AS_OF)

        assert len(top5.items) == 5
        assert len(top50.items) == 20
        assert top5.items == top50.items[:5]
        for item in top5.items:
            assert top50.find(item.candidate_id).score == item.score

    def test_ties_broken_by_identifier(self):
        twins = [make_influencer(id=i) for i in ("inf-z", "inf-a", "inf-m")]
        result = self.ranker.rank(self.campaign, _pool(self.campaign.id, twins), 3, AS_OF)
        assert result.candidate_ids == ["inf-a", "inf-m", "inf-z"]

    def test_ties_broken_by_reliability_first(self):
        # reliability carries no weight here, so both composites are equal
        weights = FactorWeights(
            niche_overlap=0.4, audience_fit=0.3, budget_fit=0.2, reliability=0.0, engagement=0.1,
        )
        ranker = Ranker(MatchScorer(EngineConfig(weights=weights)), workers=1)
        try:
            pair = [
                make_influencer(id="inf-a", outcomes=[(0, 0.2)]),
                make_influencer(id="inf-b", outcomes=[(0, 0.9)]),
            ]
            result = ranker.rank(self.campaign, _pool(self.campaign.id, pair), 2, AS_OF)
        finally:
            ranker.close()
        assert result.candidate_ids == ["inf-b", "inf-a"]

    def test_contributions_add_up(self):
        result = self.ranker.rank(self.campaign, self.pool, 20, AS_OF)
        for item in result.items:
            assert item.score.contribution_error() <= 1e-6


class TestFairness:

    def test_niche_share_cap(self):
        campaign = make_campaign(tags=("beauty", "skincare"))
        # every beauty profile outscores every skincare one
        beauty = [make_influencer(id=f"b-{i}", tags=("beauty",), rate=700, engagement=0.05) for i in range(6)]
        skincare = [make_influencer(id=f"s-{i}", tags=("skincare",), rate=1400, engagement=0.01) for i in range(6)]
        pool = _pool(campaign.id, beauty + skincare)

        with Ranker(MatchScorer(EngineConfig()), workers=2) as plain:
            uncapped = plain.rank(campaign, pool, 4, AS_OF)
        with Ranker(MatchScorer(EngineConfig()), workers=2, max_niche_share=0.5) as fair:
            capped = fair.rank(campaign, pool, 4, AS_OF)

        assert uncapped.candidate_ids == ["b-0", "b-1", "b-2", "b-3"]
        assert capped.candidate_ids == ["b-0", "b-1", "s-0", "s-1"]
        composites = [item.score.composite for item in capped.items]
        assert composites == sorted(composites, reverse=True)

    def test_backfill_when_pool_lacks_variety(self):
        campaign = make_campaign(tags=("beauty",))
        pool = _pool(campaign.id, [make_influencer(id=f"b-{i}", tags=("beauty",)) for i in range(5)])
        with Ranker(MatchScorer(EngineConfig()), max_niche_share=0.25) as ranker:
            result = ranker.rank(campaign, pool, 4, AS_OF)
        assert len(result.items) == 4


class TestCampaignRanking:

    def test_campaigns_for_influencer(self):
        influencer = make_influencer(tags=("beauty", "skincare"), rate=700)
        campaigns = [
            make_campaign(id="camp-fit", tags=("beauty", "skincare"), budget=(500, 1000)),
            make_campaign(id="camp-cheap", tags=("beauty",), budget=(100, 300)),
        ]
        pool = CandidatePool(subject_id=influencer.id, candidates=tuple(campaigns))

        with Ranker(MatchScorer(EngineConfig())) as ranker:
            result = asyncio.run(ranker.rank_campaigns_async(influencer, pool, 5, AS_OF))

        assert result.kind == RecommendationType.CAMPAIGNS_FOR_INFLUENCER
        assert result.subject_id == influencer.id
        assert result.candidate_ids == ["camp-fit", "camp-cheap"]
        assert result.items[0].score.campaign_id == "camp-fit"
