import dataclasses

import numpy as np
import pandas as pd
import pytest

from hrtkit import models, pharma
from hrtkit.medications import (
    Ester,
    LabUnit,
    ModelingError,
    NoModifiers,
    PatchRate,
    Route,
)


def local_maxima(levels):
    return [
        i
        for i in range(1, len(levels) - 1)
        if levels[i - 1] < levels[i] >= levels[i + 1]
    ]


def test_empty_history(weight):
    sim = pharma.runSimulation([], weight)
    assert len(sim) == 0
    assert sim.timeH.shape == sim.concPGmL.shape == sim.concNGmL_CPA.shape

    # A lone removal isn't a dose.
    removal = pharma.DoseEvent(Route.patchRemove, Ester.E2, 100.0)
    assert len(pharma.runSimulation([removal], weight)) == 0

    assert pharma.interpolateConcentration_E2(sim, 100.0) is None
    assert pharma.interpolateConcentration_E2(None, 100.0) is None
    assert pharma.interpolateConcentration_CPA(None, 100.0) is None
    assert np.all(
        np.isnan(pharma.interpolateConcentration_E2(sim, [1.0, 2.0]))
    )


def test_time_grid(injections_1week, weight):
    sim = pharma.runSimulation(injections_1week, weight)

    assert sim.timeH[0] == 1000.0
    assert sim.timeH[-1] >= 1168.0 + pharma.DEFAULT_HORIZON_H
    assert np.all(np.diff(sim.timeH) > 0.0)
    np.testing.assert_allclose(np.diff(sim.timeH), pharma.DEFAULT_STEP_H)

    later = pharma.runSimulation(injections_1week, weight, now_h=2000.0)
    assert later.timeH[-1] >= 2000.0 + pharma.DEFAULT_HORIZON_H
    np.testing.assert_allclose(later.concPGmL[: len(sim)], sim.concPGmL)

    # now_h before the last event doesn't shorten the grid.
    earlier = pharma.runSimulation(injections_1week, weight, now_h=0.0)
    np.testing.assert_array_equal(earlier.timeH, sim.timeH)

    fine = pharma.runSimulation(
        injections_1week, weight, step_h=0.25, horizon_h=48.0
    )
    assert fine.timeH[-1] == pytest.approx(1168.0 + 48.0)
    np.testing.assert_allclose(np.diff(fine.timeH), 0.25)

    with pytest.raises(ValueError):
        pharma.createTimeGrid(injections_1week, step_h=0.0)
    with pytest.raises(ValueError):
        pharma.createTimeGrid(injections_1week, horizon_h=-1.0)
    assert len(pharma.createTimeGrid([])) == 0


def test_two_injections(injections_1week, weight):
    both = pharma.runSimulation(injections_1week, weight)
    first = pharma.runSimulation(injections_1week[:1], weight)

    assert np.all(both.concNGmL_CPA == 0.0)
    assert len(local_maxima(both.concPGmL)) == 2

    # Residual from the first dose raises the second peak.
    peak = np.argmax(first.concPGmL)
    assert both.concPGmL[168 + peak] > first.concPGmL[peak]

    # The second dose is the first one shifted by a week.
    np.testing.assert_allclose(
        both.concPGmL[168 : len(first)] - first.concPGmL[168:],
        first.concPGmL[: len(first) - 168],
        rtol=1e-9,
        atol=1e-9,
    )


def test_concentrations_at(mixed_regimen, weight):
    sim = pharma.runSimulation(mixed_regimen, weight)
    e2, cpa = pharma.calcConcentrationsAt(mixed_regimen, weight, sim.timeH)
    np.testing.assert_allclose(e2, sim.concPGmL)
    np.testing.assert_allclose(cpa, sim.concNGmL_CPA)

    # Unordered queries give the same values.
    hours = sim.timeH[::-7]
    e2, cpa = pharma.calcConcentrationsAt(mixed_regimen, weight, hours)
    np.testing.assert_allclose(e2, sim.concPGmL[::-7])
    np.testing.assert_allclose(cpa, sim.concNGmL_CPA[::-7])

    e2, cpa = pharma.calcConcentrationsAt(mixed_regimen, weight, 1500.0)
    assert e2[0] == 0.0 and cpa[0] == 0.0


def test_series_separation(mixed_regimen, weight):
    hours = np.arange(1990.0, 2400.0, 0.5)
    estrogens = [e for e in mixed_regimen if e.ester is not Ester.CPA]
    antiandrogens = [e for e in mixed_regimen if e.ester is Ester.CPA]

    e2_all, cpa_all = pharma.calcConcentrationsAt(
        mixed_regimen, weight, hours
    )
    e2_only, cpa_none = pharma.calcConcentrationsAt(estrogens, weight, hours)
    e2_none, cpa_only = pharma.calcConcentrationsAt(
        antiandrogens, weight, hours
    )

    assert np.all(cpa_none == 0.0)
    assert np.all(e2_none == 0.0)
    np.testing.assert_allclose(e2_all, e2_only)
    np.testing.assert_allclose(cpa_all, cpa_only)
    assert np.max(cpa_all) > 0.0
    assert np.max(e2_all) > 0.0


def test_input_not_modified(mixed_regimen, weight):
    events = list(reversed(mixed_regimen))
    before = list(events)
    pharma.runSimulation(events, weight)
    assert events == before


def test_invalid_inputs(injections_1week):
    for bad in (0.0, -1.0, np.nan):
        with pytest.raises(ValueError):
            pharma.runSimulation(injections_1week, bad)

    unmodeled = pharma.DoseEvent(Route.gel, Ester.CPA, 0.0, 1.0)
    with pytest.raises(ModelingError):
        pharma.runSimulation([unmodeled], 70.0)


def test_patch_rate_no_removal(weight):
    patch = pharma.DoseEvent(
        Route.patchApply,
        Ester.E2,
        0.0,
        extras={"releaseRateUGPerDay": 50.0},
    )
    assert patch.extras == PatchRate(50.0)

    sim = pharma.runSimulation([patch], weight)
    assert np.all(np.diff(sim.concPGmL) >= 0.0)

    # Steady state is R / (ke * Vd)
    steady = 50.0 / 1000.0 / 24.0 / (models.K_CLEAR * 2.0 * weight) * 1e6
    assert sim.concPGmL[-1] == pytest.approx(steady, rel=1e-6)
    assert 30.0 < steady < 45.0


def test_patch_removal(weight):
    patch = pharma.DoseEvent(
        Route.patchApply, Ester.E2, 0.0, extras=PatchRate(100.0)
    )
    removal = pharma.DoseEvent(Route.patchRemove, Ester.E2, 100.0)
    sim = pharma.runSimulation([patch, removal], weight)

    at_removal = int(np.searchsorted(sim.timeH, 100.0))
    assert np.all(np.diff(sim.concPGmL[: at_removal + 1]) >= 0.0)
    assert np.all(np.diff(sim.concPGmL[at_removal:]) < 0.0)
    assert sim.concPGmL[-1] < 1e-6 * sim.concPGmL[at_removal]


def test_patch_dose_wear(weight):
    patch = pharma.DoseEvent(Route.patchApply, Ester.E2, 0.0, 4.2)
    assert patch.extras == NoModifiers()

    sim = pharma.runSimulation([patch], weight)
    assert sim.timeH[np.argmax(sim.concPGmL)] == models.PATCH_WEAR_H


def test_pair_patches():
    a = pharma.DoseEvent(Route.patchApply, Ester.E2, 0.0, 4.0, id="a")
    b = pharma.DoseEvent(Route.patchApply, Ester.E2, 10.0, 4.0, id="b")
    off = pharma.DoseEvent(Route.patchRemove, Ester.E2, 20.0)
    assert pharma.pairPatches([off, b, a]) == {"a": None, "b": 20.0}

    # Removal at the same moment as an application ends it.
    c = pharma.DoseEvent(Route.patchApply, Ester.E2, 5.0, 4.0, id="c")
    off = pharma.DoseEvent(Route.patchRemove, Ester.E2, 5.0)
    assert pharma.pairPatches([off, c]) == {"c": 5.0}


def test_pair_patches_skips_spent():
    # The dose-mode patch ran out at 94 h, so the removal ends the
    # rate-mode patch under it.
    a = pharma.DoseEvent(
        Route.patchApply, Ester.E2, 0.0, extras=PatchRate(50.0), id="a"
    )
    b = pharma.DoseEvent(Route.patchApply, Ester.E2, 10.0, 4.0, id="b")
    off = pharma.DoseEvent(Route.patchRemove, Ester.E2, 300.0)
    assert pharma.pairPatches([a, b, off]) == {"a": 300.0, "b": None}

    # Removal right at the end of the wear still counts.
    off = pharma.DoseEvent(
        Route.patchRemove, Ester.E2, 10.0 + models.PATCH_WEAR_H
    )
    assert pharma.pairPatches([a, b, off]) == {
        "a": None,
        "b": 10.0 + models.PATCH_WEAR_H,
    }


def test_rate_patch_ended_under_spent_patch(weight):
    events = [
        pharma.DoseEvent(
            Route.patchApply, Ester.E2, 0.0, extras=PatchRate(50.0)
        ),
        pharma.DoseEvent(Route.patchApply, Ester.E2, 10.0, 4.0),
        pharma.DoseEvent(Route.patchRemove, Ester.E2, 300.0),
    ]
    sim = pharma.runSimulation(events, weight)

    after = sim.concPGmL[sim.timeH >= 300.0]
    assert np.all(np.diff(after) < 0.0)
    assert sim.concPGmL[-1] < 1e-6 * after[0]


def test_late_removal_keeps_dose(weight):
    patch = pharma.DoseEvent(Route.patchApply, Ester.E2, 0.0, 4.0)
    late = pharma.DoseEvent(Route.patchRemove, Ester.E2, 336.0)
    hours = np.arange(0.0, 600.0, 1.0)

    worn, _ = pharma.calcConcentrationsAt([patch], weight, hours)
    with pytest.warns(RuntimeWarning):
        removed, _ = pharma.calcConcentrationsAt(
            [patch, late], weight, hours
        )
    np.testing.assert_allclose(removed, worn)

    # An early removal shortens the wear instead.
    early = pharma.DoseEvent(Route.patchRemove, Ester.E2, 40.0)
    removed, _ = pharma.calcConcentrationsAt([patch, early], weight, hours)
    assert hours[np.argmax(removed)] == 40.0
    assert np.all(removed[41:] < worn[41:] + 1e-12)
    assert removed[84] < worn[84]


def test_orphan_removal_warns(weight):
    events = [
        pharma.DoseEvent(Route.oral, Ester.E2, 0.0, 2.0),
        pharma.DoseEvent(Route.patchRemove, Ester.E2, 10.0),
    ]
    with pytest.warns(RuntimeWarning):
        sim = pharma.runSimulation(events, weight)

    oral = pharma.runSimulation(events[:1], weight)
    np.testing.assert_allclose(sim.concPGmL[: len(oral)], oral.concPGmL)


def test_sublingual_tiers(weight):
    def sim_of(tier):
        event = pharma.DoseEvent(
            Route.sublingual,
            Ester.E2,
            0.0,
            1.0,
            extras={"sublingualTier": tier},
        )
        return pharma.runSimulation([event], weight).concPGmL

    peaks = [np.max(sim_of(tier)) for tier in range(4)]
    assert peaks == sorted(peaks)
    assert peaks[0] < peaks[-1]


def test_interpolation(injections_1week, weight):
    sim = pharma.runSimulation(injections_1week, weight)

    assert pharma.interpolateConcentration_E2(sim, 999.0) is None
    assert pharma.interpolateConcentration_E2(sim, sim.timeH[-1] + 1) is None
    assert pharma.interpolateConcentration_E2(sim, 1010.0) == pytest.approx(
        sim.concPGmL[10]
    )
    mid = pharma.interpolateConcentration_E2(sim, 1010.5)
    assert isinstance(mid, float)
    assert mid == pytest.approx(
        0.5 * (sim.concPGmL[10] + sim.concPGmL[11])
    )
    assert pharma.interpolateConcentration_CPA(sim, 1010.5) == 0.0

    values = pharma.interpolateConcentration_E2(
        sim, np.array([900.0, 1010.0, 1e6])
    )
    assert np.isnan(values[0]) and np.isnan(values[2])
    assert values[1] == pytest.approx(sim.concPGmL[10])


def test_simulation_result(injections_1week, weight):
    sim = pharma.runSimulation(injections_1week, weight)

    with pytest.raises(ValueError):
        sim.concPGmL[0] = 1.0
    with pytest.raises(dataclasses.FrozenInstanceError):
        sim.concPGmL = np.zeros(len(sim))

    with pytest.raises(ValueError):
        pharma.SimulationResult(np.zeros(3), np.zeros(3), np.zeros(2))

    frame = sim.to_frame()
    assert list(frame.columns) == ["e2", "cpa"]
    assert frame.index.name == "time"
    assert len(frame) == len(sim)
    assert frame.index[0] == pharma.hoursToDateTime(1000.0)
    np.testing.assert_array_equal(frame["e2"].values, sim.concPGmL)


def test_dose_event():
    event = pharma.DoseEvent("injection", "EV", 10, 5)
    assert event.route is Route.injection
    assert event.ester is Ester.EV
    assert event.timeH == 10.0
    assert event.extras == NoModifiers()
    assert event.id != pharma.DoseEvent("injection", "EV", 10, 5).id

    with pytest.raises(dataclasses.FrozenInstanceError):
        event.doseMG = 1.0

    for dose in (-1.0, np.nan):
        with pytest.raises(ValueError):
            pharma.DoseEvent(Route.oral, Ester.E2, 0.0, dose)
    with pytest.raises(ValueError):
        pharma.DoseEvent("not-a-route", Ester.E2, 0.0, 1.0)
    with pytest.raises(ValueError):
        pharma.DoseEvent(Route.oral, Ester.E2, 0.0, 1.0, extras=PatchRate(50))


def test_lab_result():
    lab = pharma.LabResult(10.0, 367.13)
    assert lab.unit is LabUnit.pmolL
    assert lab.concPGmL == pytest.approx(100.0, abs=0.01)

    lab = pharma.LabResult(10.0, 150.0, "pg/mL")
    assert lab.unit is LabUnit.pgmL
    assert lab.concPGmL == 150.0


def test_time_helpers():
    assert float(
        pharma.dateTimeToHours(pd.Timestamp("1970-01-02"))
    ) == pytest.approx(24.0)
    assert pharma.hoursToDateTime(24.0) == pd.Timestamp("1970-01-02")

    index = pd.DatetimeIndex(["2020-03-01 00:00", "2020-03-01 06:30"])
    hours = pharma.dateTimeToHours(index)
    assert hours[1] - hours[0] == pytest.approx(6.5)
    np.testing.assert_allclose(
        pharma.dateTimeToHours(pharma.hoursToDateTime(hours)), hours
    )

    # Scalars of any resolution, strings and numpy datetimes
    for moment in (
        pd.Timestamp("2020-03-01 06:30").as_unit("s"),
        "2020-03-01 06:30",
        np.datetime64("2020-03-01T06:30", "m"),
    ):
        value = pharma.dateTimeToHours(moment)
        assert isinstance(value, float)
        assert value == pytest.approx(hours[1])

    coarse = pharma.dateTimeToHours(index.as_unit("s"))
    np.testing.assert_allclose(coarse, hours)


def test_create_doses(mixed_regimen):
    doses = pharma.createDoses(mixed_regimen)

    assert len(doses) == len(mixed_regimen)
    assert doses.index.is_monotonic_increasing
    assert list(doses.columns) == [
        "route",
        "ester",
        "dose",
        "dose_e2",
        "extras",
        "id",
    ]

    cpa = doses[doses["ester"] == "CPA"]
    assert np.all(cpa["dose_e2"] == 0.0)
    ev = doses[doses["ester"] == "EV"]
    assert ev["dose_e2"].iloc[0] == pytest.approx(5.0 * 272.38 / 356.50)


def test_create_measurements():
    labs = [
        pharma.LabResult(48.0, 150.0, LabUnit.pgmL, id="b"),
        pharma.LabResult(24.0, 367.13, LabUnit.pmolL, id="a"),
    ]
    measurements = pharma.createMeasurements(labs)
    assert list(measurements["id"]) == ["a", "b"]
    assert list(measurements["value_pgmL"]) == pytest.approx(
        [100.0, 150.0], abs=0.01
    )


def test_superposition(mixed_regimen, weight):
    hours = np.arange(1990.0, 2300.0, 0.25)
    total_e2, total_cpa = pharma.calcConcentrationsAt(
        mixed_regimen, weight, hours
    )

    sum_e2 = np.zeros_like(hours)
    sum_cpa = np.zeros_like(hours)
    for event in mixed_regimen:
        e2, cpa = pharma.calcConcentrationsAt([event], weight, hours)
        sum_e2 += e2
        sum_cpa += cpa

    np.testing.assert_allclose(total_e2, sum_e2, rtol=1e-12)
    np.testing.assert_allclose(total_cpa, sum_cpa, rtol=1e-12)
