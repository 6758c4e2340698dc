"""
Ranker

Turns a candidate pool into a deterministic top-K list:

1. POOL STATISTICS
   - features are extracted for every pair once
   - engagement bounds and per-factor medians are computed over the whole pool
2. SCORING
   - pairs are scored in chunks on a bounded thread pool
   - nothing is sorted until every chunk is back (join barrier)
3. ORDERING
   - composite score descending
   - reliability factor descending
   - candidate identifier ascending
4. FAIRNESS (optional)
   - no primary niche may take more than ``max_niche_share`` of the K slots
5. TRUNCATION to K

K only truncates; it never changes a score.
"""

import asyncio
import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor, wait
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .candidates import CandidatePool
from .entities import (
    CampaignProfile, FeatureVector, InfluencerProfile, MatchScore,
    RankedItem, RankedResult, RecommendationType,
)
from .metrics import CANDIDATES_SCORED, RANKING_LATENCY
from .scoring import MatchScorer, PoolStats

logger = logging.getLogger(__name__)

# (candidate id, primary niche, score)
Scored = Tuple[str, str, MatchScore]


def sort_key(entry: Scored) -> Tuple[float, float, str]:
    candidate_id, _, score = entry
    return (-score.composite, -score.factor('reliability').value, candidate_id)


def _primary_niche(subject_tags, candidate_tags) -> str:
    shared = sorted(subject_tags & candidate_tags) or sorted(candidate_tags)
    return shared[0] if shared else 'other'


class Ranker:
    """
    Scores a pool with bounded parallelism and orders the result.

    The ranker owns its worker pool, started on first use; call ``close()``
    (or use it as a context manager) to release the threads.
    """

    def __init__(
        self,
        scorer: MatchScorer,
        workers: int = 8,
        max_niche_share: Optional[float] = None,
    ):
        self.scorer = scorer
        self.workers = max(1, workers)
        self.max_niche_share = max_niche_share
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def executor(self) -> ThreadPoolExecutor:
        """Worker pool, created on first use and again after ``close()``"""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix='scoring')
        return self._executor

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def __enter__(self) -> 'Ranker':
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ========== Preparation ==========

    def _prepare_influencers(
        self,
        campaign: CampaignProfile,
        pool: CandidatePool[InfluencerProfile],
        as_of: datetime,
    ) -> Tuple[List[FeatureVector], Dict[str, str]]:
        vectors = self.scorer.features.compute_batch_features(campaign, pool.candidates, as_of)
        niches = {inf.id: _primary_niche(campaign.niche_tags, inf.niche_tags) for inf in pool.candidates}
        return vectors, niches

    def _prepare_campaigns(
        self,
        influencer: InfluencerProfile,
        pool: CandidatePool[CampaignProfile],
        as_of: datetime,
    ) -> Tuple[List[FeatureVector], Dict[str, str]]:
        vectors = [
            self.scorer.features.compute_features(campaign, influencer, as_of)
            for campaign in pool.candidates
        ]
        niches = {c.id: _primary_niche(influencer.niche_tags, c.niche_tags) for c in pool.candidates}
        return vectors, niches

    def _chunks(self, vectors: Sequence[FeatureVector]) -> List[Sequence[FeatureVector]]:
        size = max(1, math.ceil(len(vectors) / self.workers))
        return [vectors[i:i + size] for i in range(0, len(vectors), size)]

    def _score_chunk(self, chunk: Sequence[FeatureVector], stats: PoolStats) -> List[MatchScore]:
        return [self.scorer.score_features(fv, stats) for fv in chunk]

    # ========== Ordering ==========

    def _order(
        self,
        scored: List[Scored],
        k: int,
    ) -> List[Scored]:
        ordered = sorted(scored, key=sort_key)

        if self.max_niche_share is None or len(ordered) <= k:
            return ordered[:k]

        cap = max(1, int(self.max_niche_share * k))
        selected: List[Scored] = []
        skipped: List[Scored] = []
        per_niche: Dict[str, int] = defaultdict(int)

        for entry in ordered:
            if len(selected) >= k:
                break
            niche = entry[1]
            if per_niche[niche] >= cap:
                skipped.append(entry)
                continue
            selected.append(entry)
            per_niche[niche] += 1

        # not enough variety to honour the cap: back-fill in score order
        for entry in skipped:
            if len(selected) >= k:
                break
            selected.append(entry)

        return sorted(selected, key=sort_key)

    def _finalize(
        self,
        subject_id: str,
        kind: RecommendationType,
        k: int,
        vectors: Sequence[FeatureVector],
        niches: Dict[str, str],
        scores: List[MatchScore],
        as_of: datetime,
        started: float,
    ) -> RankedResult:
        candidate_of: Callable[[MatchScore], str] = (
            (lambda s: s.influencer_id)
            if kind == RecommendationType.INFLUENCERS_FOR_CAMPAIGN
            else (lambda s: s.campaign_id)
        )
        scored = [(candidate_of(s), niches[candidate_of(s)], s) for s in scores]
        top = self._order(scored, k)

        items = tuple(
            RankedItem(candidate_id=cid, rank=i + 1, score=score)
            for i, (cid, _, score) in enumerate(top)
        )

        elapsed = time.perf_counter() - started
        RANKING_LATENCY.observe(elapsed)
        CANDIDATES_SCORED.inc(len(vectors))
        logger.debug(f"Ranked {len(vectors)} candidates for {subject_id} in {elapsed * 1000:.1f}ms")

        return RankedResult(
            subject_id=subject_id,
            kind=kind,
            k=k,
            items=items,
            pool_size=len(vectors),
            weights_version=self.scorer.weights_version,
            generated_at=as_of,
        )

    # ========== Public API ==========

    def rank(
        self,
        campaign: CampaignProfile,
        pool: CandidatePool[InfluencerProfile],
        k: int,
        as_of: datetime,
    ) -> RankedResult:
        """Rank influencers for a campaign (blocking)"""
        started = time.perf_counter()
        vectors, niches = self._prepare_influencers(campaign, pool, as_of)
        scores = self._score_blocking(vectors)
        return self._finalize(
            campaign.id, RecommendationType.INFLUENCERS_FOR_CAMPAIGN, k, vectors, niches, scores, as_of, started,
        )

    async def rank_async(
        self,
        campaign: CampaignProfile,
        pool: CandidatePool[InfluencerProfile],
        k: int,
        as_of: datetime,
    ) -> RankedResult:
        """Rank influencers for a campaign without blocking the event loop"""
        started = time.perf_counter()
        vectors, niches = self._prepare_influencers(campaign, pool, as_of)
        scores = await self._score_async(vectors)
        return self._finalize(
            campaign.id, RecommendationType.INFLUENCERS_FOR_CAMPAIGN, k, vectors, niches, scores, as_of, started,
        )

    async def rank_campaigns_async(
        self,
        influencer: InfluencerProfile,
        pool: CandidatePool[CampaignProfile],
        k: int,
        as_of: datetime,
    ) -> RankedResult:
        """Rank campaigns for an influencer"""
        started = time.perf_counter()
        vectors, niches = self._prepare_campaigns(influencer, pool, as_of)
        scores = await self._score_async(vectors)
        return self._finalize(
            influencer.id, RecommendationType.CAMPAIGNS_FOR_INFLUENCER, k, vectors, niches, scores, as_of, started,
        )

    def _score_blocking(self, vectors: List[FeatureVector]) -> List[MatchScore]:
        stats = PoolStats.from_features(vectors)
        futures = [self.executor.submit(self._score_chunk, chunk, stats) for chunk in self._chunks(vectors)]
        wait(futures)
        scores: List[MatchScore] = []
        for future in futures:
            scores.extend(future.result())
        return scores

    async def _score_async(self, vectors: List[FeatureVector]) -> List[MatchScore]:
        stats = PoolStats.from_features(vectors)
        loop = asyncio.get_running_loop()
        # cancelling the request cancels the gather; chunks not yet started are dropped
        results = await asyncio.gather(*[
            loop.run_in_executor(self.executor, self._score_chunk, chunk, stats)
            for chunk in self._chunks(vectors)
        ])
        return [score for chunk in results for score in chunk]
