"""
Recommendation Service - Main Orchestrator

Single entry point for the matching engine. One request runs:

1. CACHE LOOKUP (cache.py)
   - generation-validated, keyed by subject, K, weights version and time bucket
2. ADMISSION
   - a global semaphore caps simultaneous ranking runs
   - waiting longer than the queue timeout fails fast with Overloaded
3. CANDIDATE GENERATION (candidates.py)
   - provider search + prefilters, bounded pool
4. RANKING (ranking.py)
   - pool statistics, parallel scoring, ordering, truncation to K
5. CACHE STORE
   - only complete results are stored; a cancelled request stores nothing

Explanations reuse the score of a cached ranking when one covers the pair
and fall back to scoring the pair against its campaign's pool.
"""

import os
import time
import asyncio
import logging
import dataclasses
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from .cache import CacheBackend, MemoryCacheBackend, RedisCacheBackend, ResultCache
from .candidates import CandidateGenerator, CandidatePool
from .config import EngineConfig
from .entities import (
    Explanation, ProfileKind, RankedResult, RecommendationType,
)
from .errors import EmptyCandidatePool, InvalidRequest, MatchingError, Overloaded, Timeout
from .explanation import ExplanationBuilder
from .metrics import OVERLOADED_REJECTIONS, RECOMMENDATION_LATENCY, RECOMMENDATION_REQUESTS
from .providers import CampaignProvider, GuardedProvider, InfluencerProvider, InMemoryProfileStore
from .ranking import Ranker
from .scoring import MatchScorer

logger = logging.getLogger(__name__)


class RecommendationService:
    """
    Campaign-influencer matching service.

    Owns the worker pool and the cache connection: call ``start()`` before
    serving and ``close()`` on shutdown.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        campaigns: Optional[CampaignProvider] = None,
        influencers: Optional[InfluencerProvider] = None,
        cache_backend: Optional[CacheBackend] = None,
        clock=time.time,
    ):
        self.config = config or EngineConfig()
        self.config.validate()

        store = None
        if campaigns is None or influencers is None:
            store = InMemoryProfileStore()
        self.providers = GuardedProvider(
            campaigns or store,
            influencers or store,
            timeout_seconds=self.config.provider_timeout_seconds,
            retry_backoff_seconds=self.config.provider_retry_backoff_seconds,
        )

        self.scorer = MatchScorer(self.config)
        self.generator = CandidateGenerator(self.config.max_candidates)
        self.ranker = Ranker(self.scorer, self.config.scoring_workers, self.config.max_niche_share)
        self.explainer = ExplanationBuilder(self.scorer)

        if cache_backend is None:
            if self.config.redis_url:
                cache_backend = RedisCacheBackend(self.config.redis_url)
            else:
                cache_backend = MemoryCacheBackend()
        self.cache = ResultCache(
            cache_backend,
            namespace=self.config.cache_namespace,
            ttl_seconds=self.config.cache_ttl_seconds,
            time_bucket_seconds=self.config.time_bucket_seconds,
            weights_version=self.scorer.weights_version,
            clock=clock,
        )

        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_rankings)
        self._started = False

        # Metrics
        self._request_count = 0
        self._total_latency_ms = 0.0

    # ========== Lifecycle ==========

    async def start(self) -> None:
        # bind the semaphore to the serving loop
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_rankings)
        await self.cache.start()
        self._started = True
        logger.info(f"Recommendation service started (weights v{self.scorer.weights_version})")

    async def close(self) -> None:
        await self.cache.close()
        self.ranker.close()
        self._started = False
        logger.info("Recommendation service stopped")

    # ========== Request plumbing ==========

    def _validate_k(self, k: Optional[int]) -> int:
        if k is None:
            return self.config.default_k
        if not 1 <= k <= self.config.max_k:
            raise InvalidRequest(f"k must be between 1 and {self.config.max_k}, got {k}")
        return k

    @asynccontextmanager
    async def _admit(self):
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self.config.queue_timeout_seconds)
        except asyncio.TimeoutError:
            OVERLOADED_REJECTIONS.inc()
            raise Overloaded(
                f"{self.config.max_concurrent_rankings} rankings already running",
                retry_after_seconds=self.config.queue_timeout_seconds,
            )
        try:
            yield
        finally:
            self._semaphore.release()

    async def _run(self, kind: str, coro):
        """Apply the request budget and record the outcome"""
        start_time = time.time()
        outcome = 'ok'
        try:
            return await asyncio.wait_for(coro, timeout=self.config.request_timeout_seconds)
        except asyncio.TimeoutError:
            outcome = 'timeout'
            raise Timeout(f"Request exceeded {self.config.request_timeout_seconds}s")
        except MatchingError as e:
            outcome = e.kind
            raise
        finally:
            elapsed = time.time() - start_time
            self._request_count += 1
            self._total_latency_ms += elapsed * 1000
            RECOMMENDATION_REQUESTS.labels(kind=kind, outcome=outcome).inc()
            RECOMMENDATION_LATENCY.labels(kind=kind).observe(elapsed)

    # ========== Public API ==========

    async def get_recommendations(self, campaign_id: str, k: Optional[int] = None) -> RankedResult:
        """
        Top-K influencers for a campaign.

        Raises:
            NotFound: unknown campaign
            InvalidRequest: K outside 1..max_k
            Overloaded: ranking queue full
            Timeout: request or provider budget exceeded
        """
        k = self._validate_k(k)
        return await self._run('influencers', self._recommend_influencers(campaign_id, k))

    async def get_campaign_recommendations(self, influencer_id: str, k: Optional[int] = None) -> RankedResult:
        """Top-K campaigns for an influencer"""
        k = self._validate_k(k)
        return await self._run('campaigns', self._recommend_campaigns(influencer_id, k))

    async def get_explanation(self, campaign_id: str, influencer_id: str) -> Explanation:
        """
        Factor breakdown for one pair, consistent with any ranking that
        contains it.

        Raises:
            NotFound: unknown campaign or influencer
        """
        return await self._run('explanation', self._explain(campaign_id, influencer_id))

    async def invalidate(self, profile_id: str, kind: Optional[ProfileKind] = None) -> bool:
        """Drop every cached result that depends on ``profile_id``"""
        return await self.cache.invalidate(profile_id, kind)

    async def health(self) -> Dict[str, Any]:
        cache_ok = await self.cache.ping()
        providers = await self.providers.ping()

        if not all(providers.values()):
            status = 'unavailable'
        elif not cache_ok:
            status = 'degraded'
        else:
            status = 'healthy'

        return {
            'status': status,
            'started': self._started,
            'cache': cache_ok,
            'providers': providers,
            'weights_version': self.scorer.weights_version,
        }

    def get_metrics(self) -> Dict[str, Any]:
        avg_latency = (
            self._total_latency_ms / self._request_count
            if self._request_count > 0 else 0
        )
        return {
            'request_count': self._request_count,
            'avg_latency_ms': avg_latency,
            'weights_version': self.scorer.weights_version,
        }

    # ========== Pipelines ==========

    async def _recommend_influencers(self, campaign_id: str, k: int) -> RankedResult:
        bucket = self.cache.current_bucket()
        key = self.cache.ranked_key(ProfileKind.CAMPAIGN, campaign_id, k, bucket)
        deps = self.cache.ranked_dependencies(ProfileKind.CAMPAIGN, campaign_id)

        lookup = await self.cache.get(key, deps)
        if lookup.hit:
            logger.debug(f"Cache hit for campaign {campaign_id} (k={k})")
            return RankedResult.from_dict(lookup.payload)

        campaign = await self.providers.get_campaign(campaign_id)

        async with self._admit():
            try:
                pool = await self.generator.generate(campaign, self.providers)
            except EmptyCandidatePool as e:
                logger.info(f"{e}; returning empty result")
                result = RankedResult.empty(
                    campaign_id, RecommendationType.INFLUENCERS_FOR_CAMPAIGN, k, self.scorer.weights_version,
                    generated_at=self.cache.bucket_start(bucket),
                )
            else:
                result = await self.ranker.rank_async(campaign, pool, k, self.cache.bucket_start(bucket))

        await self.cache.put(key, result.to_dict(), lookup.generations)
        logger.info(
            f"Ranked {result.pool_size} influencers for campaign {campaign_id}, returning {len(result.items)}"
        )
        return result

    async def _recommend_campaigns(self, influencer_id: str, k: int) -> RankedResult:
        bucket = self.cache.current_bucket()
        key = self.cache.ranked_key(ProfileKind.INFLUENCER, influencer_id, k, bucket)
        deps = self.cache.ranked_dependencies(ProfileKind.INFLUENCER, influencer_id)

        lookup = await self.cache.get(key, deps)
        if lookup.hit:
            return RankedResult.from_dict(lookup.payload)

        influencer = await self.providers.get_influencer(influencer_id)

        async with self._admit():
            try:
                pool = await self.generator.generate_campaigns(influencer, self.providers)
            except EmptyCandidatePool as e:
                logger.info(f"{e}; returning empty result")
                result = RankedResult.empty(
                    influencer_id, RecommendationType.CAMPAIGNS_FOR_INFLUENCER, k, self.scorer.weights_version,
                    generated_at=self.cache.bucket_start(bucket),
                )
            else:
                result = await self.ranker.rank_campaigns_async(
                    influencer, pool, k, self.cache.bucket_start(bucket),
                )

        await self.cache.put(key, result.to_dict(), lookup.generations)
        return result

    async def _explain(self, campaign_id: str, influencer_id: str) -> Explanation:
        bucket = self.cache.current_bucket()
        key = self.cache.explanation_key(campaign_id, influencer_id, bucket)
        deps = self.cache.explanation_dependencies(campaign_id, influencer_id)

        lookup = await self.cache.get(key, deps, entry_type='explanation')
        if lookup.hit:
            return dataclasses.replace(Explanation.from_dict(lookup.payload), source='cache')

        campaign = await self.providers.get_campaign(campaign_id)
        influencer = await self.providers.get_influencer(influencer_id)

        item = await self.cache.find_ranked_covering(campaign_id, influencer_id)
        if item is not None:
            return self.explainer.build(item.score, campaign, influencer, source='cache', rank=item.rank)

        async with self._admit():
            try:
                pool = await self.generator.generate(campaign, self.providers)
            except EmptyCandidatePool:
                pool = CandidatePool(subject_id=campaign_id, candidates=())
            loop = asyncio.get_running_loop()
            score = await loop.run_in_executor(
                self.ranker.executor, self.explainer.score_pair,
                campaign, influencer, pool.candidates, self.cache.bucket_start(bucket),
            )

        explanation = self.explainer.build(score, campaign, influencer)
        await self.cache.put(key, explanation.to_dict(), lookup.generations, entry_type='explanation')
        return explanation


def build_service(
    config: Optional[EngineConfig] = None,
    store: Optional[InMemoryProfileStore] = None,
) -> RecommendationService:
    """
    Wire a service to an in-memory profile store.

    Without an explicit store, profiles are loaded from the JSON file named by
    ``NICHELINK_PROFILES_PATH`` (an empty store if unset). Store updates
    invalidate the cache.
    """
    config = config or EngineConfig.from_env()
    if store is None:
        path = os.environ.get('NICHELINK_PROFILES_PATH')
        store = InMemoryProfileStore.from_json(path) if path else InMemoryProfileStore()

    service = RecommendationService(config, campaigns=store, influencers=store)
    store.subscribe(service.invalidate)
    return service
