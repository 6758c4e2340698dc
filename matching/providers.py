"""
Signal Providers

The engine never talks to the campaign/influencer store directly. It reads
typed snapshots through two small async interfaces:

    CampaignProvider.get_campaign(id)            -> CampaignProfile | NotFound
    CampaignProvider.search_campaigns(tags)      -> campaigns sharing a niche tag
    InfluencerProvider.get_influencer(id)        -> InfluencerProfile | NotFound
    InfluencerProvider.search_influencers(tags)  -> influencers sharing a niche tag

Transient store failures must be raised as ProviderUnavailable, never as
NotFound. Raw store payloads are validated at this boundary with pydantic
and turned into frozen dataclasses; nothing untyped reaches scoring.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import (
    Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional,
    Protocol, Sequence, Union, runtime_checkable,
)

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .entities import (
    AudienceProfile, BudgetRange, CampaignProfile, CampaignStatus,
    CollaborationOutcome, DateWindow, InfluencerProfile, InfluencerStatus,
    ProfileKind,
)
from .errors import InvalidProfile, NotFound, ProviderUnavailable, Timeout

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str, ProfileKind], Awaitable[None]]


@runtime_checkable
class CampaignProvider(Protocol):
    """Read-only access to campaign snapshots"""

    async def get_campaign(self, campaign_id: str) -> CampaignProfile:
        ...

    async def search_campaigns(self, tags: FrozenSet[str]) -> Sequence[CampaignProfile]:
        ...

    async def ping(self) -> bool:
        ...


@runtime_checkable
class InfluencerProvider(Protocol):
    """Read-only access to influencer snapshots"""

    async def get_influencer(self, influencer_id: str) -> InfluencerProfile:
        ...

    async def search_influencers(self, tags: FrozenSet[str]) -> Sequence[InfluencerProfile]:
        ...

    async def ping(self) -> bool:
        ...


# ========== Boundary records ==========

def _normalize_tags(values: Iterable[str]) -> FrozenSet[str]:
    return frozenset(v.strip().lower() for v in values if v and v.strip())


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra='ignore',
    )


class AudienceRecord(_Record):
    age_min: Optional[int] = Field(default=None, ge=0)
    age_max: Optional[int] = Field(default=None, ge=0)
    locations: List[str] = Field(default_factory=list)
    interests: List[str] = Field(default_factory=list)

    @model_validator(mode='after')
    def _check_ages(self) -> 'AudienceRecord':
        if self.age_min is not None and self.age_max is not None and self.age_min > self.age_max:
            raise ValueError(f"age_min ({self.age_min}) is greater than age_max ({self.age_max})")
        return self

    def to_profile(self) -> AudienceProfile:
        return AudienceProfile(
            age_min=self.age_min,
            age_max=self.age_max,
            locations=_normalize_tags(self.locations),
            interests=_normalize_tags(self.interests),
        )


class BudgetRecord(_Record):
    minimum: float = Field(ge=0, validation_alias=AliasChoices('minimum', 'min'))
    maximum: float = Field(ge=0, validation_alias=AliasChoices('maximum', 'max'))

    @model_validator(mode='after')
    def _check_range(self) -> 'BudgetRecord':
        if self.minimum > self.maximum:
            raise ValueError(f"budget minimum ({self.minimum}) is greater than maximum ({self.maximum})")
        return self


class WindowRecord(_Record):
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def to_window(self) -> DateWindow:
        return DateWindow(start=_as_utc(self.start), end=_as_utc(self.end))


class CollaborationRecord(_Record):
    completed_at: datetime
    score: float = Field(ge=0)

    @field_validator('score')
    @classmethod
    def _five_star_to_unit(cls, v: float) -> float:
        # the store keeps some outcomes as 1-5 star ratings
        if v > 1.0:
            if v > 5.0:
                raise ValueError(f"outcome score {v} is neither in [0, 1] nor a 5-star rating")
            return v / 5.0
        return v


class CampaignRecord(_Record):
    id: str = Field(min_length=1)
    niche_tags: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices('niche_tags', 'nicheTags', 'categories'),
    )
    target_audience: AudienceRecord = Field(default_factory=AudienceRecord)
    budget: BudgetRecord
    status: CampaignStatus = CampaignStatus.ACTIVE
    content_formats: List[str] = Field(default_factory=list)
    timeline: Optional[WindowRecord] = None
    title: str = ""
    brand_name: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator('status', mode='before')
    @classmethod
    def _upper_status(cls, v):
        return v.upper() if isinstance(v, str) else v

    def to_profile(self) -> CampaignProfile:
        return CampaignProfile(
            id=self.id,
            niche_tags=_normalize_tags(self.niche_tags),
            target_audience=self.target_audience.to_profile(),
            budget=BudgetRange(self.budget.minimum, self.budget.maximum),
            status=self.status,
            content_formats=_normalize_tags(self.content_formats),
            timeline=self.timeline.to_window() if self.timeline else None,
            title=self.title,
            brand_name=self.brand_name,
            created_at=_as_utc(self.created_at),
            updated_at=_as_utc(self.updated_at),
        )


class InfluencerRecord(_Record):
    id: str = Field(min_length=1)
    niche_tags: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices('niche_tags', 'nicheTags', 'categories', 'contentCategories'),
    )
    audience: Optional[AudienceRecord] = Field(
        default=None,
        validation_alias=AliasChoices('audience', 'audienceDemographics'),
    )
    engagement_rate: Optional[float] = Field(default=None, ge=0)
    typical_rate: Optional[float] = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices('typical_rate', 'typicalRate', 'averageRate'),
    )
    avg_turnaround_days: Optional[float] = Field(default=None, ge=0)
    availability: Optional[WindowRecord] = None
    past_collaborations: List[CollaborationRecord] = Field(default_factory=list)
    status: InfluencerStatus = InfluencerStatus.ACTIVE
    display_name: str = ""
    location: str = ""
    is_verified: bool = False

    @field_validator('engagement_rate')
    @classmethod
    def _percent_to_fraction(cls, v: Optional[float]) -> Optional[float]:
        # rates above 1 are percentages (4.5 means 4.5%)
        if v is not None and v > 1.0:
            if v > 100.0:
                raise ValueError(f"engagement rate {v} is out of range")
            return v / 100.0
        return v

    @field_validator('status', mode='before')
    @classmethod
    def _upper_status(cls, v):
        return v.upper() if isinstance(v, str) else v

    def to_profile(self) -> InfluencerProfile:
        outcomes = sorted(
            (CollaborationOutcome(_as_utc(c.completed_at), c.score) for c in self.past_collaborations),
            key=lambda o: o.completed_at,
        )
        return InfluencerProfile(
            id=self.id,
            niche_tags=_normalize_tags(self.niche_tags),
            audience=self.audience.to_profile() if self.audience else None,
            engagement_rate=self.engagement_rate,
            typical_rate=self.typical_rate,
            avg_turnaround_days=self.avg_turnaround_days,
            availability=self.availability.to_window() if self.availability else None,
            past_collaborations=tuple(outcomes),
            status=self.status,
            display_name=self.display_name,
            location=self.location,
            is_verified=self.is_verified,
        )


def parse_campaign(data: Dict) -> CampaignProfile:
    """Validate a raw campaign payload from the store"""
    try:
        return CampaignRecord.model_validate(data).to_profile()
    except ValidationError as e:
        raise InvalidProfile(f"Rejected campaign payload: {e.error_count()} validation error(s): {e}")


def parse_influencer(data: Dict) -> InfluencerProfile:
    """Validate a raw influencer payload from the store"""
    try:
        return InfluencerRecord.model_validate(data).to_profile()
    except ValidationError as e:
        raise InvalidProfile(f"Rejected influencer payload: {e.error_count()} validation error(s): {e}")


# ========== In-memory store ==========

class InMemoryProfileStore:
    """
    Reference implementation of both providers, backed by dicts.

    Used by the tests and the standalone server. Updates made through
    ``update_campaign`` / ``update_influencer`` notify the registered change
    listeners so caches can be invalidated.
    """

    def __init__(self):
        self._campaigns: Dict[str, CampaignProfile] = {}
        self._influencers: Dict[str, InfluencerProfile] = {}
        self._listeners: List[ChangeListener] = []

    # --- loading ---

    def add_campaign(self, campaign: Union[CampaignProfile, Dict]) -> CampaignProfile:
        if isinstance(campaign, dict):
            campaign = parse_campaign(campaign)
        self._campaigns[campaign.id] = campaign
        return campaign

    def add_influencer(self, influencer: Union[InfluencerProfile, Dict]) -> InfluencerProfile:
        if isinstance(influencer, dict):
            influencer = parse_influencer(influencer)
        self._influencers[influencer.id] = influencer
        return influencer

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> 'InMemoryProfileStore':
        """Load ``{"campaigns": [...], "influencers": [...]}`` from a JSON file"""
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        store = cls()
        for raw in data.get('campaigns', []):
            store.add_campaign(raw)
        for raw in data.get('influencers', []):
            store.add_influencer(raw)

        logger.info(
            f"Loaded {len(store._campaigns)} campaigns and "
            f"{len(store._influencers)} influencers from {path}"
        )
        return store

    # --- change notification ---

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    async def _notify(self, profile_id: str, kind: ProfileKind) -> None:
        for listener in self._listeners:
            await listener(profile_id, kind)

    async def update_campaign(self, campaign: Union[CampaignProfile, Dict]) -> CampaignProfile:
        campaign = self.add_campaign(campaign)
        await self._notify(campaign.id, ProfileKind.CAMPAIGN)
        return campaign

    async def update_influencer(self, influencer: Union[InfluencerProfile, Dict]) -> InfluencerProfile:
        influencer = self.add_influencer(influencer)
        await self._notify(influencer.id, ProfileKind.INFLUENCER)
        return influencer

    # --- CampaignProvider ---

    async def get_campaign(self, campaign_id: str) -> CampaignProfile:
        try:
            return self._campaigns[campaign_id]
        except KeyError:
            raise NotFound(f"Campaign {campaign_id} not found")

    async def search_campaigns(self, tags: FrozenSet[str]) -> Sequence[CampaignProfile]:
        return [c for c in self._campaigns.values() if c.niche_tags & tags]

    # --- InfluencerProvider ---

    async def get_influencer(self, influencer_id: str) -> InfluencerProfile:
        try:
            return self._influencers[influencer_id]
        except KeyError:
            raise NotFound(f"Influencer {influencer_id} not found")

    async def search_influencers(self, tags: FrozenSet[str]) -> Sequence[InfluencerProfile]:
        return [i for i in self._influencers.values() if i.niche_tags & tags]

    async def ping(self) -> bool:
        return True


# ========== Timeouts and retry ==========

class GuardedProvider:
    """
    Wraps the two providers with a per-call timeout and a single retry.

    NotFound passes straight through. A timeout or ProviderUnavailable is
    retried once after ``retry_backoff`` seconds; a second failure surfaces
    as Timeout. No lock is held while a call is in flight.
    """

    def __init__(
        self,
        campaigns: CampaignProvider,
        influencers: InfluencerProvider,
        timeout_seconds: float = 2.0,
        retry_backoff_seconds: float = 0.1,
    ):
        self.campaigns = campaigns
        self.influencers = influencers
        self.timeout_seconds = timeout_seconds
        self.retry_backoff_seconds = retry_backoff_seconds

    async def _call(self, what: str, factory: Callable[[], Awaitable]):
        last_error: Optional[Exception] = None
        for attempt in range(2):
            if attempt:
                await asyncio.sleep(self.retry_backoff_seconds)
            try:
                return await asyncio.wait_for(factory(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(f"Provider call {what} timed out after {self.timeout_seconds}s (attempt {attempt + 1})")
            except ProviderUnavailable as e:
                last_error = e
                logger.warning(f"Provider call {what} failed: {e.message} (attempt {attempt + 1})")

        raise Timeout(f"Signal provider did not answer {what}: {last_error}")

    async def get_campaign(self, campaign_id: str) -> CampaignProfile:
        return await self._call(
            f"get_campaign({campaign_id})",
            lambda: self.campaigns.get_campaign(campaign_id),
        )

    async def search_campaigns(self, tags: FrozenSet[str]) -> Sequence[CampaignProfile]:
        return await self._call("search_campaigns", lambda: self.campaigns.search_campaigns(tags))

    async def get_influencer(self, influencer_id: str) -> InfluencerProfile:
        return await self._call(
            f"get_influencer({influencer_id})",
            lambda: self.influencers.get_influencer(influencer_id),
        )

    async def search_influencers(self, tags: FrozenSet[str]) -> Sequence[InfluencerProfile]:
        return await self._call("search_influencers", lambda: self.influencers.search_influencers(tags))

    async def ping(self) -> Dict[str, bool]:
        status = {}
        for name, provider in (('campaigns', self.campaigns), ('influencers', self.influencers)):
            try:
                status[name] = bool(await asyncio.wait_for(provider.ping(), timeout=self.timeout_seconds))
            except (asyncio.TimeoutError, ProviderUnavailable) as e:
                logger.warning(f"{name} provider health check failed: {e}")
                status[name] = False
        return status
