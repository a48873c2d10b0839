"""
Productivity analytics over the canonical store.

Modules:
    scoring: Pure score, trend and ranking formulas (all clamped to [0, 100])
    metrics_engine: Windowed user and team metrics, trend series, ranking
        and the post-sync metrics cycle

Usage:
    from analytics.metrics_engine import MetricsEngine
    from schemas.metrics import MetricsPeriod

    engine = MetricsEngine(session_factory, cache=cache)
    weekly = await engine.compute_user_metrics(user_id, MetricsPeriod.WEEKLY)
"""

__all__ = [
    "MetricsEngine",
    "MetricWindow",
    "code_productivity_score",
    "task_productivity_score",
    "overall_productivity_score",
    "calculate_trend",
    "rank_and_percentile",
]
