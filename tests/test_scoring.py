"""Tests for feature computation and the weighted scorer"""

from datetime import timedelta

import pytest

from matching.config import EngineConfig, FactorWeights
from matching.entities import (
    FACTOR_NAMES, SCORE_TOLERANCE, AudienceProfile, BudgetRange, FactorScore, MatchScore,
)
from matching.errors import ConfigurationError
from matching.explanation import reasons_for
from matching.feature_engineering import FeatureEngineering, age_range_overlap, jaccard
from matching.scoring import MatchScorer, PoolStats

from .conftest import AS_OF, make_campaign, make_influencer


class TestFeatureEngineering:

    def setup_method(self):
        self.fe = FeatureEngineering(reliability_half_life_days=180)

    def test_jaccard(self):
        assert jaccard(frozenset({"beauty", "skincare"}), frozenset({"beauty"})) == 0.5
        assert jaccard(frozenset(), frozenset()) == 0.0

    def test_budget_fit_inside_range(self):
        assert self.fe.compute_budget_fit(700, BudgetRange(500, 1000)) == 1.0
        assert self.fe.compute_budget_fit(500, BudgetRange(500, 1000)) == 1.0

    def test_budget_fit_decays_outside_range(self):
        budget = BudgetRange(500, 1000)
        assert self.fe.compute_budget_fit(1500, budget) == pytest.approx(0.5)
        assert self.fe.compute_budget_fit(2500, budget) == 0.0
        assert self.fe.compute_budget_fit(375, budget) == pytest.approx(0.5)

    def test_budget_fit_without_rate_is_missing(self):
        assert self.fe.compute_budget_fit(None, BudgetRange(500, 1000)) is None

    def test_age_range_overlap(self):
        target = AudienceProfile(age_min=18, age_max=27)
        audience = AudienceProfile(age_min=23, age_max=32)
        # 23..27 shared out of 18..32
        assert age_range_overlap(target, audience) == pytest.approx(5 / 15)

    def test_audience_fit_combines_components(self):
        target = AudienceProfile(age_min=18, age_max=34, locations=frozenset({"vn"}))
        audience = AudienceProfile(age_min=18, age_max=34, locations=frozenset({"vn", "th"}))
        assert self.fe.compute_audience_fit(target, audience) == pytest.approx((1.0 + 0.5) / 2)

    def test_audience_fit_missing_summary(self):
        assert self.fe.compute_audience_fit(AudienceProfile(), None) is None

    def test_reliability_weights_recent_outcomes(self):
        inf = make_influencer(outcomes=[(0, 1.0), (180, 0.0)])
        value = self.fe.compute_reliability(inf.past_collaborations, AS_OF)
        # weights 1 and 0.5
        assert value == pytest.approx(1.0 / 1.5)

    def test_reliability_without_history(self):
        assert self.fe.compute_reliability((), AS_OF) is None

    def test_engagement_is_raw(self):
        fv = self.fe.compute_features(make_campaign(), make_influencer(engagement=0.045), AS_OF)
        assert fv.engagement_rate == 0.045


class TestPoolStats:

    def test_engagement_normalized_against_pool(self):
        stats = PoolStats(engagement_min=0.02, engagement_max=0.06)
        assert stats.normalize_engagement(0.02) == 0.0
        assert stats.normalize_engagement(0.04) == pytest.approx(0.5)
        assert stats.normalize_engagement(0.06) == 1.0

    def test_single_rate_pool(self):
        stats = PoolStats(engagement_min=0.05, engagement_max=0.05)
        assert stats.normalize_engagement(0.05) == 1.0

    def test_median_defaults_to_neutral(self):
        assert PoolStats().median('reliability') == 0.5


class TestMatchScorer:

    def setup_method(self):
        self.scorer = MatchScorer(EngineConfig())

    def test_contributions_sum_to_composite(self):
        campaign = make_campaign()
        influencers = [
            make_influencer(id=f"inf-{i}", rate=300 + 150 * i, engagement=0.01 * (i + 1),
                            outcomes=[(i * 20, 0.5 + 0.05 * i)])
            for i in range(8)
        ]
        vectors = self.scorer.features.compute_batch_features(campaign, influencers, AS_OF)
        stats = PoolStats.from_features(vectors)
        for fv in vectors:
            score = self.scorer.score_features(fv, stats)
            assert [f.name for f in score.factors] == list(FACTOR_NAMES)
            assert score.contribution_error() <= SCORE_TOLERANCE
            assert 0.0 <= score.composite <= 1.0

    def test_beauty_skincare_tradeoff(self):
        campaign = make_campaign(tags=("beauty", "skincare"), budget=(500, 1000))
        a = make_influencer(id="inf-a", tags=("beauty",), rate=700, engagement=0.045)
        b = make_influencer(id="inf-b", tags=("beauty", "skincare"), rate=1500, engagement=0.06)

        vectors = self.scorer.features.compute_batch_features(campaign, [a, b], AS_OF)
        stats = PoolStats.from_features(vectors)
        score_a, score_b = (self.scorer.score_features(fv, stats) for fv in vectors)

        assert score_a.factor('niche_overlap').value == 0.5
        assert score_b.factor('niche_overlap').value == 1.0
        assert score_a.factor('budget_fit').value == 1.0
        assert score_b.factor('budget_fit').value < 1.0
        assert score_a.factor('budget_fit').contribution > score_b.factor('budget_fit').contribution

        # 0.15 + 0.125 + 0.2 + 0.075 + 0.0  vs  0.3 + 0.125 + 0.1 + 0.075 + 0.1
        assert score_a.composite == pytest.approx(0.55)
        assert score_b.composite == pytest.approx(0.70)

    def test_missing_history_gets_pool_median(self):
        campaign = make_campaign()
        veterans = [
            make_influencer(id="inf-1", outcomes=[(0, 0.2)]),
            make_influencer(id="inf-2", outcomes=[(0, 0.8)]),
            make_influencer(id="inf-3", outcomes=[(0, 0.6)]),
        ]
        newcomer = make_influencer(id="inf-new")

        vectors = self.scorer.features.compute_batch_features(campaign, veterans + [newcomer], AS_OF)
        stats = PoolStats.from_features(vectors)
        score = self.scorer.score_features(vectors[-1], stats)

        reliability = score.factor('reliability')
        assert reliability.imputed is True
        assert reliability.value == pytest.approx(0.6)

    def test_scoring_is_deterministic(self):
        campaign = make_campaign()
        inf = make_influencer(outcomes=[(10, 0.7)])
        assert self.scorer.score(campaign, inf, AS_OF) == self.scorer.score(campaign, inf, AS_OF)

    def test_recent_outcomes_outweigh_old_ones(self):
        campaign = make_campaign()
        improving = make_influencer(id="inf-up", outcomes=[(0, 1.0), (360, 0.0)])
        declining = make_influencer(id="inf-down", outcomes=[(360, 1.0), (0, 0.0)])
        up = self.scorer.score(campaign, improving, AS_OF).factor('reliability').value
        down = self.scorer.score(campaign, declining, AS_OF).factor('reliability').value
        assert up > 0.5 > down

    def test_future_outcomes_count_as_fresh(self):
        campaign = make_campaign()
        inf = make_influencer(outcomes=[(0, 0.4)])
        earlier = AS_OF - timedelta(days=30)
        assert self.scorer.score(campaign, inf, earlier).factor('reliability').value == pytest.approx(0.4)


class TestWeights:

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ConfigurationError):
            MatchScorer(EngineConfig(weights=FactorWeights(niche_overlap=0.5)))

    def test_negative_weight_rejected(self):
        weights = FactorWeights(niche_overlap=0.6, audience_fit=-0.05, budget_fit=0.2,
                                reliability=0.15, engagement=0.1)
        with pytest.raises(ConfigurationError):
            weights.validate()

    def test_weights_version_tracks_weights(self):
        default = EngineConfig()
        shifted = EngineConfig(weights=FactorWeights(niche_overlap=0.35, engagement=0.05))
        assert default.weights_version == EngineConfig().weights_version
        assert default.weights_version != shifted.weights_version


class TestReasons:

    def _score(self, **values):
        factors = tuple(
            FactorScore(name=name, weight=0.2, value=values.get(name, 0.5), contribution=0.1,
                        imputed=name == 'reliability' and 'reliability' not in values)
            for name in FACTOR_NAMES
        )
        return MatchScore(campaign_id="camp-1", influencer_id="inf-1", composite=0.5, factors=factors)

    def test_strong_factors_give_reasons(self):
        reasons = reasons_for(self._score(niche_overlap=1.0, budget_fit=0.9, engagement=0.75))
        assert reasons == ["Excellent content category match", "Cost-effective within budget"]

    def test_imputed_factor_gives_no_reason(self):
        score = self._score()
        score = MatchScore(
            campaign_id=score.campaign_id, influencer_id=score.influencer_id, composite=score.composite,
            factors=tuple(
                FactorScore(f.name, f.weight, 0.9, f.contribution, f.imputed) for f in score.factors
            ),
        )
        assert "Proven track record" not in reasons_for(score)
        assert len(reasons_for(score)) == 4
