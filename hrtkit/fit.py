import lmfit as lm
import numpy as np
import pandas as pd

from hrtkit import pharma, piecewise


######################################################
### Calibrating the simulated curve to lab results ###


def calibrationPoints(simulation, labResults):
    """
    Compare lab results against the simulated estradiol curve.

    Returns a DataFrame sorted by time with the columns timeH,
    lab_pgmL (lab value converted to pg/mL), sim_pgmL (simulated value
    at the same time) and ratio (lab_pgmL / sim_pgmL). Lab results
    where the simulation has no estimate, or a non-positive one, are
    left out since there's nothing to scale.

    Parameters:
    ===========
    simulation  SimulationResult (see pharma.runSimulation), or None.
    labResults  Sequence of LabResults."""

    rows = []
    for lab in labResults:
        sim_value = pharma.interpolateConcentration_E2(simulation, lab.timeH)
        if sim_value is None or not sim_value > 0.0:
            continue
        lab_value = lab.concPGmL
        ratio = lab_value / sim_value
        if not np.isfinite(ratio):
            continue
        rows.append((lab.timeH, lab_value, sim_value, ratio))

    points = pd.DataFrame(
        rows, columns=["timeH", "lab_pgmL", "sim_pgmL", "ratio"]
    ).astype(np.float64)
    return points.sort_values("timeH", kind="stable").reset_index(drop=True)


def _identity(hour):
    if np.ndim(hour) == 0:
        return 1.0
    return np.ones(np.shape(hour), dtype=np.float64)


def createCalibrationInterpolator(simulation, labResults):
    """
    Build a time-varying multiplier that scales the simulated estradiol
    curve towards the lab results.

    At each usable lab result the multiplier is the ratio of measured
    to simulated concentration (see calibrationPoints). Between them
    it's linearly interpolated, and before the first or after the last
    it's held at that ratio. Multiple lab results at the same moment are
    averaged. With no usable lab results the multiplier is 1.0
    everywhere.

    Only the estradiol series is calibrated. There are no lab results
    for cyproterone acetate.

    Returns a function of time [hours] accepting a scalar or ndarray.

    Parameters:
    ===========
    simulation  SimulationResult (see pharma.runSimulation), or None.
    labResults  Sequence of LabResults."""

    points = calibrationPoints(simulation, labResults or ())
    if len(points) == 0:
        return _identity

    return piecewise.piecewiseLinear(
        points["timeH"].values,
        points["ratio"].values,
        extrapolate="flat",
    )


def calibrateScale_lsq(simulation, labResults):
    """
    Fit one scale factor for the whole simulated estradiol curve, such
    that the squared errors between the scaled curve and the lab
    results are minimized.

    Returns (scale, stderr). stderr is None when it can't be estimated,
    eg. with a single lab result. Returns (1.0, None) when no lab
    result is usable.

    Parameters:
    ===========
    simulation  SimulationResult (see pharma.runSimulation), or None.
    labResults  Sequence of LabResults."""

    points = calibrationPoints(simulation, labResults)
    if len(points) == 0:
        return (1.0, None)

    def residuals(params, sim_values, lab_values):
        return params["scale"].value * sim_values - lab_values

    params = lm.Parameters()
    params.add("scale", value=max(points["ratio"].mean(), 1e-6), min=0.0)

    result = lm.minimize(
        residuals,
        params,
        args=(points["sim_pgmL"].values, points["lab_pgmL"].values),
    )
    scale = result.params["scale"]
    return (scale.value, scale.stderr)


def calibrateScale_meanscale(simulation, labResults):
    """
    One scale factor for the whole simulated estradiol curve, as the
    trivial mean of the measured to simulated ratios. Returns 1.0 when
    no lab result is usable."""

    points = calibrationPoints(simulation, labResults)
    if len(points) == 0:
        return 1.0
    return float(points["ratio"].mean())
