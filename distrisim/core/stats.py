"""
Read-only projections used by the protocols' ``get_stats``.
"""
from collections import Counter
from typing import Any, Dict, Iterable, Sequence

import numpy as np

from distrisim.core.message_pool import MessagePool, MessageStatus


def count_by(items: Iterable[Any], attribute: str) -> Dict[str, int]:
    """
    Count items by the value of one attribute.

    Enum values are counted by their ``value``.
    """
    counter: Counter = Counter()
    for item in items:
        value = getattr(item, attribute)
        counter[getattr(value, "value", value)] += 1
    return dict(counter)


def message_counts(pool: MessagePool) -> Dict[str, int]:
    return {
        "total": pool.count(),
        "in_flight": pool.count(MessageStatus.IN_FLIGHT),
        "delivered": pool.count(MessageStatus.DELIVERED),
        "dropped": pool.count(MessageStatus.DROPPED),
    }


def load_summary(loads: Sequence[float]) -> Dict[str, float]:
    """
    Distribution summary of per-participant load.

    Args:
        loads: One load value per participant

    Returns:
        mean, std, min, max and imbalance (max / mean)
    """
    if len(loads) == 0:
        return {"mean": 0.0, "std": 0.0, "min": 0.0, "max": 0.0, "imbalance": 0.0}

    values = np.asarray(loads, dtype=float)
    mean = float(values.mean())
    return {
        "mean": mean,
        "std": float(values.std()),
        "min": float(values.min()),
        "max": float(values.max()),
        "imbalance": float(values.max() / mean) if mean > 0 else 0.0,
    }
