"""Prometheus metrics for the matching engine"""

from prometheus_client import Counter, Histogram

RECOMMENDATION_REQUESTS = Counter(
    'nichelink_recommendation_requests_total',
    'Recommendation requests by type and outcome',
    ['kind', 'outcome'],
)
RECOMMENDATION_LATENCY = Histogram(
    'nichelink_recommendation_latency_seconds',
    'End-to-end recommendation latency',
    ['kind'],
)
RANKING_LATENCY = Histogram(
    'nichelink_ranking_latency_seconds',
    'Time spent scoring and ordering one candidate pool',
)
CANDIDATES_SCORED = Counter(
    'nichelink_candidates_scored_total',
    'Candidate pairs scored',
)
CACHE_HITS = Counter('nichelink_cache_hits_total', 'Result cache hits', ['entry'])
CACHE_MISSES = Counter('nichelink_cache_misses_total', 'Result cache misses', ['entry'])
CACHE_ERRORS = Counter('nichelink_cache_errors_total', 'Cache backend failures', ['operation'])
CACHE_INVALIDATIONS = Counter(
    'nichelink_cache_invalidations_total',
    'Profile invalidations by profile kind',
    ['kind'],
)
OVERLOADED_REJECTIONS = Counter(
    'nichelink_overloaded_rejections_total',
    'Requests rejected because the ranking queue was full',
)
