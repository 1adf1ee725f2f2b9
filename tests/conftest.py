"""
Shared fixtures: small creel surveys with hand-checkable structure.
"""

import polars as pl
import pytest

from pycreel import SamplingDesign

WEEKDAY_DAYS = 20
WEEKEND_DAYS = 8


@pytest.fixture
def ten_unit_design():
    """
    Ten equally weighted, unstratified, unclustered units with y = 1..10.

    Expected values:
    - total = 55
    - V(total) = n/(n-1) * sum (y - 5.5)^2 = 10/9 * 82.5 = 91.6667
    - deff = 1 (the design is simple random sampling)
    """
    return SamplingDesign(
        pl.DataFrame(
            {
                "unit": list(range(1, 11)),
                "y": [float(i) for i in range(1, 11)],
                "w": [1.0] * 10,
            }
        ),
        weight="w",
    )


@pytest.fixture
def interview_data():
    """
    Eighteen angler interviews, three per sampled day.

    Days d1-d3 are weekdays (20 in the season), d4-d6 weekend days (8 in
    the season); interview weights expand each day to its day type.
    """
    days = [f"d{i}" for i in range(1, 7) for _ in range(3)]
    day_type = ["weekday"] * 9 + ["weekend"] * 9
    return pl.DataFrame(
        {
            "interview": list(range(1, 19)),
            "day": days,
            "day_type": day_type,
            "section": ["A", "B", "A"] * 6,
            "hours": [2.0, 3.0, 4.0, 1.0, 2.0, 5.0, 3.0, 3.0, 2.0,
                      4.0, 2.0, 1.0, 2.0, 2.0, 3.0, 5.0, 1.0, 2.0],
            "walleye": [1, 0, 2, 0, 1, 3, 2, 1, 0, 1, 0, 0, 0, 2, 1, 3, 0, 1],
            "perch": [3, 1, 0, 2, 0, 1, 0, 4, 1, 2, 1, 0, 1, 0, 2, 0, 3, 1],
            "w": [WEEKDAY_DAYS / 3 * 10.0] * 9 + [WEEKEND_DAYS / 3 * 10.0] * 9,
        }
    )


@pytest.fixture
def interview_design(interview_data):
    return SamplingDesign(interview_data, weight="w", strata="day_type", cluster="day")


@pytest.fixture
def day_design():
    """One row per sampled day with day weights and the season's day counts."""
    return SamplingDesign(
        pl.DataFrame(
            {
                "day": [f"d{i}" for i in range(1, 7)],
                "day_type": ["weekday"] * 3 + ["weekend"] * 3,
                "w": [WEEKDAY_DAYS / 3] * 3 + [WEEKEND_DAYS / 3] * 3,
                "n_days": [WEEKDAY_DAYS] * 3 + [WEEKEND_DAYS] * 3,
            }
        ),
        weight="w",
        strata="day_type",
        fpc="n_days",
    )


@pytest.fixture
def count_data():
    """Two instantaneous counts per section on each sampled day."""
    rows = []
    counts = {
        "d1": (12, 8, 5, 7),
        "d2": (10, 14, 6, 4),
        "d3": (9, 11, 3, 5),
        "d4": (25, 21, 12, 10),
        "d5": (30, 26, 9, 15),
        "d6": (22, 18, 11, 13),
    }
    for day, (a1, a2, b1, b2) in counts.items():
        for section, values in (("A", (a1, a2)), ("B", (b1, b2))):
            for value in values:
                rows.append(
                    {"day": day, "section": section, "count": value, "period_minutes": 600}
                )
    return pl.DataFrame(rows)
