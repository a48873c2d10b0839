"""
Pure productivity formulas.

Every score is bounded to [0, 100]; nothing here touches the store.
"""

from typing import Iterable, Tuple


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def code_productivity_score(commits: int, lines_added: int, files_changed: int) -> float:
    commit_score = min(commits * 10, 100)
    lines_score = min(lines_added / 10, 100)
    files_score = min(files_changed * 5, 100)
    return round(_clamp(0.3 * commit_score + 0.4 * lines_score + 0.3 * files_score), 2)


def task_productivity_score(
    tasks_completed: int,
    avg_completion_days: float,
    tasks_in_progress: int
) -> float:
    """No completions (average 0) scores the neutral 50 on the speed component"""
    completion_score = min(tasks_completed * 20, 100)
    if avg_completion_days > 0:
        speed_score = max(100 - avg_completion_days * 2, 0)
    else:
        speed_score = 50
    wip_score = min(tasks_in_progress * 10, 50)
    return round(_clamp(0.5 * completion_score + 0.3 * speed_score + 0.2 * wip_score), 2)


def overall_productivity_score(code_score: float, task_score: float) -> float:
    return round(_clamp((code_score + task_score) / 2), 2)


def calculate_trend(current: float, previous: float) -> float:
    """
    Percentage change from ``previous`` to ``current``.

    From a zero baseline any activity is +100% and no activity is 0%.
    """
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return round((current - previous) / previous * 100, 2)


def rank_and_percentile(score: float, all_scores: Iterable[float]) -> Tuple[int, float]:
    """
    Rank is 1 + the number of strictly greater scores, so ties share a rank.

    ``all_scores`` must include ``score`` itself.
    """
    scores = list(all_scores)
    total = len(scores)
    if total == 0:
        return 1, 100.0
    rank = 1 + sum(1 for other in scores if other > score)
    percentile = (total - rank + 1) / total * 100
    return rank, round(percentile, 2)


def interim_productivity_score(
    commits: int,
    tasks_completed: int,
    hours_tracked: float
) -> float:
    """
    Fast estimate written by the connectors over a trailing 30 days.

    40 points per commit up to 400, 100 per completed task up to 500 and one
    per tracked hour up to 100, scaled from 1000 down to 100.
    """
    commit_points = min(commits * 40, 400)
    task_points = min(tasks_completed * 100, 500)
    time_points = min(hours_tracked, 100)
    return round(_clamp((commit_points + task_points + time_points) / 10), 2)
