"""
Candidate Generation

Narrows the universe down to a bounded pool before any scoring happens, so the
cost of one ranking request stays predictable. Only cheap prefilters run here:

    - niche tag intersection is non-empty
    - availability window overlaps the campaign timeline
    - the profile is ACTIVE
    - the caller did not exclude it

If more profiles survive than the pool bound, the ones sharing the most niche
tags with the subject are kept (identifier breaks ties).
"""

import logging
from dataclasses import dataclass
from typing import FrozenSet, Generic, Iterable, List, Optional, Tuple, TypeVar

from .entities import (
    CampaignProfile, CampaignStatus, InfluencerProfile, InfluencerStatus,
)
from .errors import EmptyCandidatePool
from .providers import CampaignProvider, InfluencerProvider

logger = logging.getLogger(__name__)

P = TypeVar('P', CampaignProfile, InfluencerProfile)


@dataclass(frozen=True)
class CandidatePool(Generic[P]):
    """Bounded candidate set for one subject, ordered by identifier"""
    subject_id: str
    candidates: Tuple[P, ...]
    total_matched: int = 0

    @property
    def ids(self) -> FrozenSet[str]:
        return frozenset(c.id for c in self.candidates)

    def __len__(self) -> int:
        return len(self.candidates)

    def get(self, candidate_id: str) -> Optional[P]:
        for c in self.candidates:
            if c.id == candidate_id:
                return c
        return None


class CandidateGenerator:
    """Prefilters and bounds candidate pools in both matching directions"""

    def __init__(self, max_candidates: int = 500):
        self.max_candidates = max_candidates

    def _bound(self, pool_size: Optional[int]) -> int:
        if pool_size is None:
            return self.max_candidates
        return max(1, min(pool_size, self.max_candidates))

    @staticmethod
    def _truncate(subject_tags: FrozenSet[str], survivors: List[P], bound: int) -> List[P]:
        if len(survivors) <= bound:
            return survivors
        survivors = sorted(survivors, key=lambda p: (-len(p.niche_tags & subject_tags), p.id))
        return survivors[:bound]

    # --- influencers for a campaign ---

    @staticmethod
    def influencer_passes(campaign: CampaignProfile, influencer: InfluencerProfile) -> bool:
        if influencer.status != InfluencerStatus.ACTIVE:
            return False
        if not (influencer.niche_tags & campaign.niche_tags):
            return False
        if influencer.availability is not None and not influencer.availability.overlaps(campaign.timeline):
            return False
        return True

    def select_influencers(
        self,
        campaign: CampaignProfile,
        influencers: Iterable[InfluencerProfile],
        pool_size: Optional[int] = None,
        exclusions: Optional[FrozenSet[str]] = None,
    ) -> CandidatePool[InfluencerProfile]:
        """
        Apply the prefilters to an already fetched influencer list.

        Raises:
            EmptyCandidatePool: when nobody survives prefiltering
        """
        exclusions = exclusions or frozenset()
        seen = set()
        survivors = []
        for inf in influencers:
            if inf.id in seen or inf.id in exclusions:
                continue
            seen.add(inf.id)
            if self.influencer_passes(campaign, inf):
                survivors.append(inf)

        if not survivors:
            raise EmptyCandidatePool(f"No eligible influencers for campaign {campaign.id}")

        kept = self._truncate(campaign.niche_tags, survivors, self._bound(pool_size))
        if len(kept) < len(survivors):
            logger.debug(
                f"Campaign {campaign.id}: pool bounded from {len(survivors)} to {len(kept)} candidates"
            )

        return CandidatePool(
            subject_id=campaign.id,
            candidates=tuple(sorted(kept, key=lambda p: p.id)),
            total_matched=len(survivors),
        )

    async def generate(
        self,
        campaign: CampaignProfile,
        provider: InfluencerProvider,
        pool_size: Optional[int] = None,
        exclusions: Optional[FrozenSet[str]] = None,
    ) -> CandidatePool[InfluencerProfile]:
        """Fetch influencers sharing a niche tag with the campaign and prefilter them"""
        if not campaign.niche_tags:
            raise EmptyCandidatePool(f"Campaign {campaign.id} has no niche tags")

        influencers = await provider.search_influencers(campaign.niche_tags)
        return self.select_influencers(campaign, influencers, pool_size, exclusions)

    # --- campaigns for an influencer ---

    @staticmethod
    def campaign_passes(influencer: InfluencerProfile, campaign: CampaignProfile) -> bool:
        if campaign.status != CampaignStatus.ACTIVE:
            return False
        if not (campaign.niche_tags & influencer.niche_tags):
            return False
        if campaign.timeline is not None and not campaign.timeline.overlaps(influencer.availability):
            return False
        return True

    def select_campaigns(
        self,
        influencer: InfluencerProfile,
        campaigns: Iterable[CampaignProfile],
        pool_size: Optional[int] = None,
        exclusions: Optional[FrozenSet[str]] = None,
    ) -> CandidatePool[CampaignProfile]:
        exclusions = exclusions or frozenset()
        survivors = []
        seen = set()
        for campaign in campaigns:
            if campaign.id in seen or campaign.id in exclusions:
                continue
            seen.add(campaign.id)
            if self.campaign_passes(influencer, campaign):
                survivors.append(campaign)

        if not survivors:
            raise EmptyCandidatePool(f"No eligible campaigns for influencer {influencer.id}")

        kept = self._truncate(influencer.niche_tags, survivors, self._bound(pool_size))
        return CandidatePool(
            subject_id=influencer.id,
            candidates=tuple(sorted(kept, key=lambda p: p.id)),
            total_matched=len(survivors),
        )

    async def generate_campaigns(
        self,
        influencer: InfluencerProfile,
        provider: CampaignProvider,
        pool_size: Optional[int] = None,
        exclusions: Optional[FrozenSet[str]] = None,
    ) -> CandidatePool[CampaignProfile]:
        if influencer.status != InfluencerStatus.ACTIVE or not influencer.niche_tags:
            raise EmptyCandidatePool(f"Influencer {influencer.id} is not eligible for matching")

        campaigns = await provider.search_campaigns(influencer.niche_tags)
        return self.select_campaigns(influencer, campaigns, pool_size, exclusions)
