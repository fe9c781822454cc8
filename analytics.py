"""
Aggregations over a user's tasks.

The server answers /tasks/stats and /tasks/analytics with `compute_stats` and
`compute_progress_analytics`; the client reuses the same functions on its
cached task list when those endpoints are unreachable, then derives the
dashboard widgets with `build_dashboard`.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from schemas import DayProductivity, ProgressAnalytics, Task, TaskStats, utcnow

RECENT_ACTIVITY_LIMIT = 10

# (name, lowest progress, highest progress), inclusive
PROGRESS_BUCKETS = (
    ("notStarted", 0, 0),
    ("early", 1, 25),
    ("quarter", 26, 50),
    ("half", 51, 75),
    ("mostlyDone", 76, 99),
    ("completed", 100, 100),
)


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def is_overdue(task: Task, now: datetime) -> bool:
    return task.status != "completed" and task.due_date is not None and task.due_date < now


def compute_stats(tasks: Sequence[Task], now: Optional[datetime] = None) -> TaskStats:
    now = now or utcnow()
    return TaskStats(
        total=len(tasks),
        completed=sum(1 for t in tasks if t.status == "completed"),
        in_progress=sum(1 for t in tasks if t.status == "in-progress"),
        pending=sum(1 for t in tasks if t.status == "pending"),
        overdue=sum(1 for t in tasks if is_overdue(t, now)),
        average_progress=_mean([t.progress for t in tasks]),
        total_time_spent=sum(t.total_time_spent for t in tasks),
    )


def compute_progress_analytics(tasks: Sequence[Task]) -> ProgressAnalytics:
    """
    Roll the tasks' histories up by calendar day.

    productivityByDay gets a key for every day that has a daily update, but only
    updates with workedOn set are counted; totalProgress adds the progress the
    task recorded on that same day. timeByDay sums every time entry.
    """
    productivity: Dict[str, DayProductivity] = {}
    time_by_day: Dict[str, float] = {}

    for task in tasks:
        for day, update in task.daily_updates.items():
            bucket = productivity.setdefault(day.isoformat(), DayProductivity())
            if not update.worked_on:
                continue
            bucket.tasks_worked_on += 1
            bucket.accomplishments += len(update.accomplishments)
            bucket.blockers += len(update.blockers)
            entry = task.progress_history.get(day)
            if entry is not None:
                bucket.total_progress += entry.progress

        for day, entry in task.time_entries.items():
            key = day.isoformat()
            time_by_day[key] = time_by_day.get(key, 0.0) + entry.hours

    return ProgressAnalytics(
        total_tasks=len(tasks),
        average_progress=_mean([t.progress for t in tasks]),
        total_time_spent=sum(t.total_time_spent for t in tasks),
        total_estimated_hours=sum(t.estimated_hours or 0 for t in tasks),
        productivity_by_day=dict(sorted(productivity.items())),
        time_by_day=dict(sorted(time_by_day.items())),
    )


# Dashboard widgets

def completion_rate(stats: TaskStats) -> float:
    if not stats.total:
        return 0.0
    return round(stats.completed / stats.total * 100, 1)


def progress_bucket(progress: int) -> str:
    for name, low, high in PROGRESS_BUCKETS:
        if low <= progress <= high:
            return name
    raise ValueError(f"progress out of range: {progress}")


def progress_distribution(tasks: Iterable[Task]) -> Dict[str, int]:
    counts = {name: 0 for name, _, _ in PROGRESS_BUCKETS}
    for task in tasks:
        counts[progress_bucket(task.progress)] += 1
    return counts


def recent_activity(tasks: Iterable[Task], limit: int = RECENT_ACTIVITY_LIMIT) -> List[Dict[str, Any]]:
    worked = sorted(
        (t for t in tasks if t.last_worked_on is not None),
        key=lambda t: t.last_worked_on,
        reverse=True,
    )
    return [
        {
            "taskId": t.id,
            "title": t.title,
            "lastWorkedOn": t.last_worked_on.isoformat(),
            "progress": t.progress,
            "totalTimeSpent": t.total_time_spent,
        }
        for t in worked[:limit]
    ]


def build_dashboard(stats: TaskStats, analytics: ProgressAnalytics, tasks: Sequence[Task]) -> Dict[str, Any]:
    return {
        "completionRate": completion_rate(stats),
        "progressDistribution": progress_distribution(tasks),
        "recentActivity": recent_activity(tasks),
        "stats": stats.to_public(),
        "analytics": analytics.to_public(),
    }


def dashboard_from_tasks(tasks: Sequence[Task], now: Optional[datetime] = None) -> Dict[str, Any]:
    return build_dashboard(compute_stats(tasks, now), compute_progress_analytics(tasks), tasks)
