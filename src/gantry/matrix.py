# matrix.py
from __future__ import annotations

from itertools import product
from typing import Any, Dict, List

from .expressions import to_str
from .model import Job, Strategy

MatrixPoint = Dict[str, Any]


def _matches(point: MatrixPoint, entry: Dict[str, Any]) -> bool:
    return all(k in point and point[k] == v for k, v in entry.items())


def expand_strategy(strategy: Strategy | None) -> List[MatrixPoint]:
    """
    Expand matrix axes into concrete points.

    Order: axis declaration order, then value order (itertools.product).
    - exclude: drops every combination that matches all keys of an entry
    - include: merged into each combination it matches without overwriting
      an axis value; otherwise appended as a new combination
    - no axes: a single empty point
    """
    if strategy is None:
        return [{}]

    axes = [(name, values) for name, values in strategy.axes if values]
    names = [name for name, _ in axes]

    points: List[MatrixPoint] = []
    if axes:
        for combo in product(*(values for _, values in axes)):
            point = dict(zip(names, combo))
            if any(_matches(point, entry) for entry in strategy.exclude):
                continue
            points.append(point)

    base_count = len(points)
    for entry in strategy.include:
        merged = False
        for point in points[:base_count]:
            original = {k: v for k, v in entry.items() if k in names}
            if not _matches(point, original):
                continue
            extra = {k: v for k, v in entry.items() if k not in names}
            if not extra:
                merged = True
                continue
            if any(k in point and point[k] != v for k, v in extra.items()):
                continue
            point.update(extra)
            merged = True
        if not merged:
            points.append(dict(entry))

    return points or [{}]


def expand(job: Job) -> List[MatrixPoint]:
    return expand_strategy(job.strategy)


def instance_name(job: Job, point: MatrixPoint) -> str:
    """`build` or `build (linux, 3.12)` for matrix points."""
    if not point:
        return job.display_name
    return f"{job.display_name} ({', '.join(to_str(v) for v in point.values())})"
