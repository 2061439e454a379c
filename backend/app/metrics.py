"""Prometheus metrics for monitoring.

Tracks request latency, score recalculation volume and duration,
rank passes, badge awards and analytics cache use.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, Info

# Application info
APP_INFO = Info("lb_app", "Learnboard application info")

# HTTP metrics
HTTP_REQUESTS_TOTAL = Counter(
    "lb_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "lb_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Scoring metrics
SCORE_RECALCULATIONS = Counter(
    "lb_score_recalculations_total",
    "Score recalculations",
    ["kind"],  # group, global
)

SCORE_RECALCULATION_DURATION = Histogram(
    "lb_score_recalculation_duration_seconds",
    "Score recalculation duration",
    ["kind"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

GLOBAL_SCORE_SKIPPED = Counter(
    "lb_global_score_skipped_total",
    "Global score recalculations skipped as fresh",
)

RANK_UPDATES = Counter(
    "lb_rank_updates_total",
    "Rank recomputation passes",
    ["scope"],  # group, global, challenge
)

# Side effects
BADGES_AWARDED = Counter(
    "lb_badges_awarded_total",
    "Badges awarded",
    ["rarity"],
)

SIDE_EFFECT_FAILURES = Counter(
    "lb_side_effect_failures_total",
    "Best-effort side effects that raised",
    ["effect"],
)

CHALLENGES_COMPLETED = Counter(
    "lb_challenges_completed_total",
    "Challenge participations that met every criterion",
)

# Rate limiting
RATE_LIMIT_HITS = Counter(
    "lb_rate_limit_hits_total",
    "Total rate limit hits",
    ["endpoint", "limit_type"],
)

RATE_LIMITER_ERRORS = Counter(
    "lb_rate_limiter_errors_total",
    "Rate limit checks skipped because Redis failed",
    ["endpoint"],
)

# Analytics cache
ANALYTICS_CACHE_HITS = Counter(
    "lb_analytics_cache_hits_total",
    "Analytics cache hits",
)

ANALYTICS_CACHE_MISSES = Counter(
    "lb_analytics_cache_misses_total",
    "Analytics cache misses",
)
