from matplotlib import pyplot
from matplotlib import collections as mc
from matplotlib import dates as mdates
import numpy as np

from hrtkit import pharma


def startPlot(figsize=(12, 7)):
    """
    Create a figure for plotting simulations (see plotSimulation).

    Simulations are sampled hourly and span anything from a couple of
    days to years, so the date ticks adapt to the visible range and
    switch to hours of the day when zoomed in far enough."""

    fig, ax_pri = pyplot.subplots(figsize=figsize, dpi=150)

    ax_pri.set_axisbelow(True)
    ax_pri.set_zorder(1)
    ax_pri.patch.set_visible(False)

    ax_pri.set_ylabel("Estradiol (pg/mL)")
    ax_pri.xaxis_date()

    major = mdates.AutoDateLocator(minticks=4, maxticks=10)
    ax_pri.xaxis.set_major_locator(major)
    ax_pri.xaxis.set_major_formatter(mdates.ConciseDateFormatter(major))
    ax_pri.xaxis.set_minor_locator(
        mdates.AutoDateLocator(minticks=12, maxticks=40)
    )

    for which, alpha in (("major", 0.7), ("minor", 0.2)):
        ax_pri.grid(
            which=which,
            axis="both",
            linestyle=":",
            color=(0.8, 0.8, 0.8),
            alpha=alpha,
        )

    return fig, ax_pri


def plotSimulation(
    fig,
    ax,
    sim,
    labResults=(),
    calibration=None,
    label="Simulated",
):
    """
    Plot the simulated estradiol curve of a SimulationResult, along with
    lab results if there are any.

    Returns the secondary axis holding the cyproterone acetate curve,
    or None when there is no cyproterone acetate in the simulation.

    Parameters:
    ===========
    fig          Figure the axes belong to.
    ax           Axes to plot the estradiol curves on (see startPlot).
    sim          SimulationResult (see pharma.runSimulation).
    labResults   (Optional) Sequence of LabResults to plot as points,
                 with dashed lines to the simulated curve.
    calibration  (Optional) Calibration function (see
                 fit.createCalibrationInterpolator). When given, the
                 calibrated curve is plotted too.
    label        (Optional) Matplotlib label of the simulated curve."""

    if len(sim) == 0:
        return None

    levels = sim.to_frame()
    ax.set_xlim(
        (
            mdates.date2num(levels.index[0]),
            mdates.date2num(levels.index[-1]),
        )
    )
    ax.plot(levels.index, levels["e2"].values, label=label, zorder=1)

    if calibration is not None:
        ax.plot(
            levels.index,
            levels["e2"].values * calibration(sim.timeH),
            label=f"{label} (calibrated)",
            linestyle="--",
            zorder=1,
        )

    labResults = list(labResults)
    if len(labResults) > 0:
        measurements = pharma.createMeasurements(labResults)
        ax.plot(
            measurements.index,
            measurements["value_pgmL"].values,
            "o",
            label="Lab results",
            zorder=3,
        )

        # Draw vertical lines from the measured points to the simulated
        # curve, where the simulation has an estimate.
        simulated = pharma.interpolateConcentration_E2(
            sim, pharma.dateTimeToHours(measurements.index)
        )
        lines = [
            ((mdates.date2num(d), m), (mdates.date2num(d), s))
            for d, m, s in zip(
                measurements.index,
                measurements["value_pgmL"].values,
                simulated,
            )
            if np.isfinite(s)
        ]
        ax.add_collection(
            mc.LineCollection(
                lines,
                linestyles=(0, (2, 3)),
                colors=(0.7, 0.3, 0.3, 1.0),
                zorder=2,
            )
        )

    ax_cpa = None
    if np.any(sim.concNGmL_CPA > 0.0):
        ax_cpa = ax.twinx()
        ax_cpa.set_zorder(0)
        ax_cpa.set_ylabel("Cyproterone acetate (ng/mL)")
        ax_cpa.plot(
            levels.index,
            levels["cpa"].values,
            color=(0.6, 0.4, 0.8, 0.8),
            label="CPA",
        )

    ax.legend()
    return ax_cpa
