import matplotlib
import pytest

from hrtkit import pharma
from hrtkit.medications import Ester, Route

matplotlib.use("Agg")


@pytest.fixture
def weight():
    return 70.0


@pytest.fixture
def injections_1week():
    """Two identical 5 mg estradiol injections one week apart."""

    return [
        pharma.DoseEvent(Route.injection, Ester.E2, 1000.0, 5.0, id="first"),
        pharma.DoseEvent(
            Route.injection, Ester.E2, 1000.0 + 7 * 24.0, 5.0, id="second"
        ),
    ]


@pytest.fixture
def mixed_regimen():
    """Daily oral estradiol and cyproterone acetate plus one injection."""

    events = []
    for day in range(5):
        t = 2000.0 + 24.0 * day
        events.append(pharma.DoseEvent(Route.oral, Ester.E2, t, 2.0))
        events.append(pharma.DoseEvent(Route.oral, Ester.CPA, t + 0.5, 12.5))
    events.append(pharma.DoseEvent(Route.injection, Ester.EV, 2010.25, 5.0))
    return events
