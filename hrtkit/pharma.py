from dataclasses import dataclass, field
import math
import uuid
import warnings

import numpy as np
import pandas as pd

from hrtkit import medications, models
from hrtkit.medications import Ester, LabUnit, Route


# Hourly samples keep peaks smooth without too many points.
DEFAULT_STEP_H = 1.0
# Simulate three weeks past the last event (or now).
DEFAULT_HORIZON_H = 21.0 * 24.0


def _newId():
    return str(uuid.uuid4())


##################
### Data Model ###


@dataclass(frozen=True)
class DoseEvent:
    """
    A single logged dose.

    Parameters:
    ===========
    route   Route of administration (Route or its string value).
    ester   Compound administered (Ester or its string value).
    timeH   Administration time [hours since the Unix epoch].
    doseMG  Administered mass [mg] as entered, ie. ester mass, not
            estradiol-equivalent. Patch removals carry 0.
    extras  RouteModifiers value, or a JSON-style extras mapping that
            is converted with medications.modifiersFromExtras.
    id      Opaque unique id. Generated when not given."""

    route: Route
    ester: Ester
    timeH: float
    doseMG: float = 0.0
    extras: medications.RouteModifiers = field(
        default_factory=medications.NoModifiers
    )
    id: str = field(default_factory=_newId)

    def __post_init__(self):
        route = Route(self.route)
        object.__setattr__(self, "route", route)
        object.__setattr__(self, "ester", Ester(self.ester))
        object.__setattr__(self, "timeH", float(self.timeH))
        object.__setattr__(self, "doseMG", float(self.doseMG))
        object.__setattr__(
            self,
            "extras",
            medications.modifiersFromExtras(route, self.extras),
        )

        if route is not Route.patchRemove and not self.doseMG >= 0.0:
            raise ValueError(f"doseMG must be >= 0 (got {self.doseMG}).")


@dataclass(frozen=True)
class LabResult:
    timeH: float
    concValue: float
    unit: LabUnit = LabUnit.pmolL
    id: str = field(default_factory=_newId)

    def __post_init__(self):
        unit = self.unit.lower() if isinstance(self.unit, str) else self.unit
        object.__setattr__(self, "unit", LabUnit(unit))
        object.__setattr__(self, "timeH", float(self.timeH))
        object.__setattr__(self, "concValue", float(self.concValue))

    @property
    def concPGmL(self):
        return medications.convertConcentrationUnits(
            self.concValue, self.unit
        )


@dataclass(frozen=True)
class SimulationResult:
    """
    Concentrations sampled on a strictly increasing time grid.

    timeH         Sample times [hours since the Unix epoch].
    concPGmL      Estradiol concentration [pg/mL].
    concNGmL_CPA  Cyproterone acetate concentration [ng/mL].

    The arrays are read-only; a new result is computed whenever the
    inputs change."""

    timeH: np.ndarray
    concPGmL: np.ndarray
    concNGmL_CPA: np.ndarray

    def __post_init__(self):
        for name in ("timeH", "concPGmL", "concNGmL_CPA"):
            arr = np.array(getattr(self, name), dtype=np.float64)
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)

        if not (
            len(self.timeH) == len(self.concPGmL) == len(self.concNGmL_CPA)
        ):
            raise ValueError(
                f"Series must have equal lengths, but got "
                f"{len(self.timeH)=}, {len(self.concPGmL)=}, "
                f"{len(self.concNGmL_CPA)=}."
            )

    def __len__(self):
        return len(self.timeH)

    def to_frame(self):
        return pd.DataFrame(
            {"e2": self.concPGmL, "cpa": self.concNGmL_CPA},
            index=pd.DatetimeIndex(hoursToDateTime(self.timeH), name="time"),
        )


def emptySimulation():
    return SimulationResult(np.zeros(0), np.zeros(0), np.zeros(0))


####################
### Time Helpers ###


def dateTimeToHours(dt):
    """
    Timestamp (or anything pandas parses as one) to float hours since
    the Unix epoch. DatetimeIndexes and arrays give an ndarray."""

    scalar = np.ndim(dt) == 0
    ns = pd.DatetimeIndex(np.atleast_1d(dt) if scalar else dt)
    hours = (
        ns.as_unit("ns").asi8
        * 1e-9  # ns to s
        / 60.0  # s to min
        / 60.0  # min to hr
    )
    return float(hours[0]) if scalar else hours


def hoursToDateTime(hours):
    """Float hours since the Unix epoch to Timestamp or DatetimeIndex."""

    if np.ndim(hours) == 0:
        return pd.Timestamp(round(float(hours) * 3600.0e9), unit="ns")
    ns = np.round(np.asarray(hours, dtype=np.float64) * 3600.0e9)
    return pd.DatetimeIndex(pd.to_datetime(ns.astype(np.int64), unit="ns"))


###############################
### DataFrame Views of Input ###


def createDoses(events):
    """
    Create a DataFrame of dose events for inspection and plotting.

    The DataFrame is indexed by administration time, sorted, and has
    the columns route, ester, dose (as entered, mg), dose_e2 (estradiol
    equivalent mg, 0 for cyproterone acetate), extras and id."""

    events = sorted(events, key=lambda e: e.timeH)
    return pd.DataFrame(
        {
            "route": [e.route.value for e in events],
            "ester": [e.ester.value for e in events],
            "dose": np.array([e.doseMG for e in events], dtype=np.float64),
            "dose_e2": np.array(
                [
                    e.doseMG * medications.getToE2Factor(e.ester)
                    if medications.isEstrogen(e.ester)
                    else 0.0
                    for e in events
                ],
                dtype=np.float64,
            ),
            "extras": [
                medications.modifiersToExtras(e.extras) for e in events
            ],
            "id": [e.id for e in events],
        },
        index=pd.DatetimeIndex(
            hoursToDateTime(np.array([e.timeH for e in events])), name="time"
        ),
    )


def createMeasurements(labResults):
    """
    Create a DataFrame of lab results indexed by draw time, with the
    columns value and unit as reported, value_pgmL converted to pg/mL,
    and id."""

    labResults = sorted(labResults, key=lambda r: r.timeH)
    return pd.DataFrame(
        {
            "value": np.array(
                [r.concValue for r in labResults], dtype=np.float64
            ),
            "unit": [r.unit.value for r in labResults],
            "value_pgmL": np.array(
                [r.concPGmL for r in labResults], dtype=np.float64
            ),
            "id": [r.id for r in labResults],
        },
        index=pd.DatetimeIndex(
            hoursToDateTime(np.array([r.timeH for r in labResults])),
            name="time",
        ),
    )


###################################
### Pharmacokinetic Computation ###


def pairPatches(events):
    """
    Resolve when each patch stops delivering.

    Every patch removal ends the nearest preceding patch application
    that is still active. A patch with an explicit release rate stays
    active until it is removed, while a patch entered by total dose is
    only active for models.PATCH_WEAR_H after it was applied.
    Returns a dict mapping the id of each patch application to its
    removal time [hours], or to None when it was never removed.
    Removals with no active patch to end are ignored with a
    RuntimeWarning."""

    # Applications sort before removals at the same moment so a removal
    # can end a patch applied at that exact time.
    patch_routes = (Route.patchApply, Route.patchRemove)
    ordered = sorted(
        (e for e in events if e.route in patch_routes),
        key=lambda e: (e.timeH, e.route is Route.patchRemove),
    )

    removed_at = {}
    worn = []
    for e in ordered:
        if e.route is Route.patchApply:
            removed_at[e.id] = None
            worn.append(e)
            continue

        # Dose-mode patches that ran out before the removal are gone.
        worn = [
            p
            for p in worn
            if isinstance(p.extras, medications.PatchRate)
            or p.timeH + models.PATCH_WEAR_H >= e.timeH
        ]
        if worn:
            removed_at[worn.pop().id] = e.timeH
        else:
            warnings.warn(
                f"Patch removal at {e.timeH} h has no active patch to "
                f"remove, ignoring it.",
                RuntimeWarning,
            )

    return removed_at


def _doseResponseOf(event, weight, removed_at):
    """Returns (is_estrogen, response(t)) for a dose event."""

    route, ester = event.route, event.ester
    bioavailability = medications.getBioavailabilityMultiplier(
        route, ester, event.extras
    )

    if medications.isEstrogen(ester):
        dose = event.doseMG * medications.getToE2Factor(ester)
    else:
        dose = event.doseMG
    dose *= bioavailability

    if route is Route.patchApply:
        rate, wear = models.patchInput(event.doseMG, event.extras)
        rate *= bioavailability
        removal = removed_at.get(event.id)
        if removal is not None:
            wear = min(wear, removal - event.timeH)

        def response(t):
            return models.doseResponse(
                route, ester, dose, t, weight, rate=rate, wear=wear
            )

    else:

        def response(t):
            return models.doseResponse(route, ester, dose, t, weight)

    return medications.isEstrogen(ester), response


def _superpose(events, weight, hours):
    hours = np.asarray(hours, dtype=np.float64)
    e2_levels = np.zeros_like(hours)
    cpa_levels = np.zeros_like(hours)

    removed_at = pairPatches(events)
    ordered = len(hours) < 2 or bool(np.all(np.diff(hours) >= 0.0))

    for event in events:
        if event.route is Route.patchRemove:
            continue

        is_estrogen, response = _doseResponseOf(event, weight, removed_at)
        levels = e2_levels if is_estrogen else cpa_levels

        # Only samples at or after the dose can have a contribution.
        # On a sorted grid that's a tail slice, which is a lot faster
        # than masking the whole sample space.
        if ordered:
            i0 = np.searchsorted(hours, event.timeH, side="left")
            idxs = slice(i0, None)
        else:
            idxs = hours >= event.timeH

        levels[idxs] += response(hours[idxs] - event.timeH)

    return e2_levels, cpa_levels


def createTimeGrid(
    events,
    now_h=None,
    step_h=DEFAULT_STEP_H,
    horizon_h=DEFAULT_HORIZON_H,
):
    """
    Uniform time grid from the earliest dose to horizon_h past the last
    event, or past now_h if that is later. Returns an empty array when
    there are no doses.

    Parameters:
    ===========
    events     Sequence of DoseEvents.
    now_h      (Optional) Current time [hours since the Unix epoch].
    step_h     Sample spacing [hours].
    horizon_h  How far past the last event (or now) to sample [hours]."""

    if not step_h > 0.0:
        raise ValueError(f"step_h must be > 0 (got {step_h}).")
    if not horizon_h >= 0.0:
        raise ValueError(f"horizon_h must be >= 0 (got {horizon_h}).")

    dose_times = [e.timeH for e in events if e.route is not Route.patchRemove]
    if len(dose_times) == 0:
        return np.zeros(0)

    start = min(dose_times)
    end = max(e.timeH for e in events)
    if now_h is not None:
        end = max(end, float(now_h))
    end += horizon_h

    n = int(math.ceil((end - start) / step_h - 1e-9)) + 1
    return start + step_h * np.arange(n, dtype=np.float64)


def runSimulation(
    events,
    weight,
    now_h=None,
    step_h=DEFAULT_STEP_H,
    horizon_h=DEFAULT_HORIZON_H,
):
    """
    Simulate estradiol and cyproterone acetate concentrations for a
    dose history.

    Every dose contributes linearly to the total concentration, so the
    single-dose responses shifted to each dose's time are additively
    superimposed across a uniform time grid (see createTimeGrid).
    Estrogen-class doses are summed as estradiol equivalents into
    concPGmL; cyproterone acetate doses are summed separately into
    concNGmL_CPA. An empty history gives an empty result.

    Raises ModelingError if any dose has no kinetic model.

    Parameters:
    ===========
    events     Sequence of DoseEvents. It isn't modified.
    weight     Body weight [kg].
    now_h      (Optional) Current time [hours since the Unix epoch],
               extending the grid when it is after the last event.
    step_h     Sample spacing [hours].
    horizon_h  Sampling horizon past the last event or now [hours]."""

    models.checkWeight(weight)
    events = list(events)

    grid = createTimeGrid(events, now_h, step_h, horizon_h)
    if len(grid) == 0:
        return emptySimulation()

    e2_levels, cpa_levels = _superpose(events, weight, grid)
    return SimulationResult(grid, e2_levels, cpa_levels)


def calcConcentrationsAt(events, weight, hours):
    """
    Exact concentrations at arbitrary moments, such as the moments of
    dosing or of lab draws. Returns (estradiol [pg/mL], cyproterone
    acetate [ng/mL]) ndarrays matching hours."""

    models.checkWeight(weight)
    return _superpose(list(events), weight, np.atleast_1d(hours))


def _interpolate(sim, series, hour):
    if sim is None or len(sim) == 0:
        if np.ndim(hour) == 0:
            return None
        return np.full(np.shape(hour), np.nan)

    values = getattr(sim, series)
    if np.ndim(hour) == 0:
        hour = float(hour)
        if hour < sim.timeH[0] or hour > sim.timeH[-1]:
            return None
        return float(np.interp(hour, sim.timeH, values))

    return np.interp(
        np.asarray(hour, dtype=np.float64),
        sim.timeH,
        values,
        left=np.nan,
        right=np.nan,
    )


def interpolateConcentration_E2(sim, hour):
    """
    Estradiol concentration [pg/mL] at hour, linearly interpolated
    between grid samples. Returns None outside the grid (nan for
    array queries)."""

    return _interpolate(sim, "concPGmL", hour)


def interpolateConcentration_CPA(sim, hour):
    """interpolateConcentration_E2 for cyproterone acetate [ng/mL]."""

    return _interpolate(sim, "concNGmL_CPA", hour)
