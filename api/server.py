"""
NicheLink Matching API

FastAPI front for the recommendation service.

Features:
- Influencer recommendations for a campaign (and campaigns for an influencer)
- Per-pair explanations consistent with the ranking
- Cache invalidation hook for the profile store
- Health checks
- Prometheus metrics
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from matching.errors import (
    InvalidProfile, InvalidRequest, MatchingError, NotFound, Overloaded, Timeout,
)
from matching.recommendation_engine import RecommendationService, build_service

from .schemas import (
    CampaignRecommendationsResponse, ErrorResponse, ExplanationResponse,
    GenerateRequest, HealthResponse, InvalidateRequest, InvalidateResponse,
    RecommendationsResponse,
)

# Configure logging
logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

STATUS_CODES = {
    NotFound: 404,
    InvalidRequest: 422,
    Overloaded: 503,
    Timeout: 504,
    InvalidProfile: 502,
}


def status_for(error: MatchingError) -> int:
    for error_type, status in STATUS_CODES.items():
        if isinstance(error, error_type):
            return status
    return 500


def create_app(service: Optional[RecommendationService] = None) -> FastAPI:
    """
    Build the API.

    Without an explicit service one is built from the environment when the
    app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = service or build_service()
        await svc.start()
        app.state.service = svc
        try:
            yield
        finally:
            await svc.close()

    app = FastAPI(
        title="NicheLink Matching API",
        description="Campaign-influencer matching and recommendation engine",
        version=API_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get('CORS_ORIGINS', 'http://localhost:3000,http://localhost:5173').split(','),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MatchingError)
    async def matching_error_handler(request: Request, exc: MatchingError):
        status = status_for(exc)
        if status >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
        headers = None
        if isinstance(exc, Overloaded):
            headers = {'Retry-After': str(max(1, int(round(exc.retry_after_seconds))))}
        return JSONResponse(status_code=status, content=exc.to_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        problems = [
            f"{'.'.join(str(part) for part in e['loc'] if part != 'body')}: {e['msg']}"
            for e in exc.errors()
        ]
        error = InvalidRequest("; ".join(problems) or "Invalid request")
        return JSONResponse(status_code=status_for(error), content=error.to_dict())

    def get_service(request: Request) -> RecommendationService:
        return request.app.state.service

    # ========== API Endpoints ==========

    @app.post(
        "/recommendations/generate",
        response_model=RecommendationsResponse,
        responses={404: {'model': ErrorResponse}, 503: {'model': ErrorResponse}, 504: {'model': ErrorResponse}},
        tags=["Recommendations"],
    )
    async def generate_recommendations(
        body: GenerateRequest,
        service: RecommendationService = Depends(get_service),
    ):
        """Top-K influencers for a campaign, best first"""
        result = await service.get_recommendations(body.campaign_id, body.k)
        return RecommendationsResponse.from_result(result)

    @app.get("/recommendations/health", response_model=HealthResponse, tags=["Health"])
    async def health_check(service: RecommendationService = Depends(get_service)):
        """Engine readiness: cache and signal providers"""
        health = await service.health()
        return HealthResponse(
            status=health['status'],
            version=API_VERSION,
            started=health['started'],
            cache_available=health['cache'],
            providers=health['providers'],
            weights_version=health['weights_version'],
        )

    @app.get(
        "/recommendations/influencers/{influencer_id}/campaigns",
        response_model=CampaignRecommendationsResponse,
        tags=["Recommendations"],
    )
    async def campaign_recommendations(
        influencer_id: str,
        k: Optional[int] = Query(None),
        service: RecommendationService = Depends(get_service),
    ):
        """Top-K campaigns for an influencer"""
        result = await service.get_campaign_recommendations(influencer_id, k)
        return CampaignRecommendationsResponse.from_result(result)

    @app.get(
        "/recommendations/{campaign_id}/{influencer_id}/explanation",
        response_model=ExplanationResponse,
        responses={404: {'model': ErrorResponse}},
        tags=["Recommendations"],
    )
    async def explanation(
        campaign_id: str,
        influencer_id: str,
        service: RecommendationService = Depends(get_service),
    ):
        """Factor-by-factor breakdown of one match"""
        result = await service.get_explanation(campaign_id, influencer_id)
        return ExplanationResponse.from_explanation(result)

    @app.post("/recommendations/invalidate", response_model=InvalidateResponse, tags=["Cache"])
    async def invalidate(
        body: InvalidateRequest,
        service: RecommendationService = Depends(get_service),
    ):
        """Called by the profile store when a campaign or influencer changes"""
        done = await service.invalidate(body.profile_id, body.kind)
        return InvalidateResponse(profile_id=body.profile_id, invalidated=done)

    @app.get("/metrics", tags=["Monitoring"])
    async def metrics():
        """Prometheus metrics endpoint"""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
