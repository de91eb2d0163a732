"""Shared charts for the fill extractor tests.

All charts are 4/4 at 120 BPM with 192 ticks per beat, so one beat is
500 ms and one bar is 768 ticks.
"""

import pytest

from eval.patterns import synthetic_charts


@pytest.fixture(scope="session")
def charts():
    return synthetic_charts()


@pytest.fixture
def backbeat_chart(charts):
    return charts["backbeat"]


@pytest.fixture
def tom_fill_chart(charts):
    return charts["tom_fill"]


@pytest.fixture
def two_fills_chart(charts):
    return charts["two_fills"]


@pytest.fixture
def split_fill_chart(charts):
    return charts["split_fill"]


@pytest.fixture
def hat_groove_fill_chart(charts):
    return charts["hat_groove_fill"]
