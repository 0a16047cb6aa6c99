"""Simulated sensor readings."""

import random
from typing import Any, Dict, Optional

DOOR_OPEN_PROBABILITY = 0.05


def _uniform(rng: random.Random, low: float, high: float) -> float:
    return round(rng.uniform(low, high), 2)


def sample_readings(rng: Optional[random.Random] = None) -> Dict[str, Any]:
    """One telemetry sample: temperature, UV index, session time, humidity, door state."""
    rng = rng or random
    return {
        "temperature": _uniform(rng, 30, 45),
        "uvIndex": _uniform(rng, 1, 12),
        "sessionTime": _uniform(rng, 0, 20),
        "humidity": _uniform(rng, 20, 60),
        "boothDoorOpen": rng.random() > 1 - DOOR_OPEN_PROBABILITY,
    }
