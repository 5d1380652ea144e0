from collections import namedtuple
import math
import numbers
from types import MappingProxyType

import numpy as np

from hrtkit import medications
from hrtkit.medications import Ester, ModelingError, Route


##########################
### Kinetic Parameters ###

# ka and ke are per hour, vdPerKG is L/kg. formation is the share of a
# depot dose that reaches the modeled compartment as free estradiol.
KineticParams = namedtuple(
    "KineticParams", ["ka", "ke", "vdPerKG", "formation"]
)

VD_PER_KG = 2.0
K_CLEAR = 0.41
K_CLEAR_DEPOT = 0.041

CPA_VD_PER_KG = 3.5
CPA_K_CLEAR = 0.0173

# Implicit wear of a patch entered by total dose (twice weekly).
PATCH_WEAR_H = 84.0

# mg/L to display units
PG_PER_ML = 1.0e6
NG_PER_ML = 1.0e3

KINETICS = MappingProxyType(
    {
        # Longer esters release from the depot more slowly.
        (Route.injection, Ester.E2): KineticParams(
            0.0800, K_CLEAR_DEPOT, VD_PER_KG, 0.1000
        ),
        (Route.injection, Ester.EB): KineticParams(
            0.0600, K_CLEAR_DEPOT, VD_PER_KG, 0.1092
        ),
        (Route.injection, Ester.EV): KineticParams(
            0.0216, K_CLEAR_DEPOT, VD_PER_KG, 0.0623
        ),
        (Route.injection, Ester.EC): KineticParams(
            0.0050, K_CLEAR_DEPOT, VD_PER_KG, 0.1173
        ),
        (Route.injection, Ester.EN): KineticParams(
            0.0035, K_CLEAR_DEPOT, VD_PER_KG, 0.1200
        ),
        (Route.oral, Ester.E2): KineticParams(0.32, K_CLEAR, VD_PER_KG, 1.0),
        (Route.oral, Ester.EV): KineticParams(0.05, K_CLEAR, VD_PER_KG, 1.0),
        (Route.oral, Ester.CPA): KineticParams(
            1.0, CPA_K_CLEAR, CPA_VD_PER_KG, 1.0
        ),
        (Route.sublingual, Ester.E2): KineticParams(
            1.8, K_CLEAR, VD_PER_KG, 1.0
        ),
        (Route.sublingual, Ester.EV): KineticParams(
            0.9, K_CLEAR, VD_PER_KG, 1.0
        ),
        # Patches have zero-order input, so ka is unused.
        (Route.patchApply, Ester.E2): KineticParams(
            None, K_CLEAR, VD_PER_KG, 1.0
        ),
        (Route.gel, Ester.E2): KineticParams(0.022, K_CLEAR, VD_PER_KG, 1.0),
    }
)


def kineticParams(route, ester):
    route = Route(route)
    ester = Ester(ester)
    if route is Route.patchRemove:
        raise ModelingError(
            "Patch removal has no concentration curve of its own; it only "
            "ends the wear of a prior patch."
        )
    try:
        return KINETICS[(route, ester)]
    except KeyError:
        raise ModelingError(
            f"There are no kinetic parameters for {ester.value} "
            f"administered by route '{route.value}'."
        ) from None


def checkWeight(weight):
    if isinstance(weight, bool) or not (
        isinstance(weight, numbers.Real) and math.isfinite(weight)
    ):
        raise ValueError(f"Body weight must be a finite number, got {weight}.")
    if weight <= 0.0:
        raise ValueError(f"Body weight must be > 0 kg, got {weight}.")
    return float(weight)


##############
### Models ###


def _bateman(t, D, ka, ke, Vd):
    if math.isclose(ka, ke):
        return D * ke * t * np.exp(-ke * t) / Vd
    return D * ka / (Vd * (ka - ke)) * (np.exp(-ke * t) - np.exp(-ka * t))


class Cmpt1Model:
    """One compartment with first-order absorption and elimination."""

    def model(self, t, D, ka, ke, Vd):
        t = np.asarray(t, dtype=np.float64)
        # Evaluate on t >= 0 only so exp() can't overflow before masking.
        C = _bateman(np.maximum(t, 0.0), D, ka, ke, Vd)
        return np.where(t >= 0.0, C, 0.0)


class ZeroOrderModel:
    """
    One compartment with constant-rate input R over the wear time T,
    then first-order elimination only. T may be np.inf."""

    def model(self, t, R, ke, Vd, T=np.inf):
        t = np.asarray(t, dtype=np.float64)
        tc = np.maximum(t, 0.0)
        t_on = np.minimum(tc, T)
        t_off = np.maximum(tc - T, 0.0)
        C = R / (ke * Vd) * (1.0 - np.exp(-ke * t_on)) * np.exp(-ke * t_off)
        return np.where(t >= 0.0, C, 0.0)


_first_order = Cmpt1Model()
_zero_order = ZeroOrderModel()


def patchInput(doseMG, modifiers):
    """
    Returns the (rate [mg/h], implicit wear [h]) of a patch. An explicit
    release rate wears open-ended until removal, while a total dose is
    spread over PATCH_WEAR_H."""

    if isinstance(modifiers, medications.PatchRate):
        return (modifiers.ugPerDay / 1000.0 / 24.0, np.inf)
    return (doseMG / PATCH_WEAR_H, PATCH_WEAR_H)


def doseResponse(route, ester, dose, t, weight, rate=None, wear=None):
    """
    Concentration contribution of a single dose at elapsed times t.

    The result is in pg/mL for the estrogen class and in ng/mL for
    cyproterone acetate, and is exactly 0.0 wherever t < 0.

    Raises ModelingError for route and compound combinations without
    kinetic parameters, including patch removal.

    Parameters:
    ===========
    route   Route of administration.
    ester   Compound administered.
    dose    Bioavailable dose [mg]. Estradiol-equivalent for the
            estrogen class, raw mass for cyproterone acetate.
            Ignored for patches when rate is given.
    t       Elapsed time since administration [hours], scalar or
            ndarray.
    weight  Body weight [kg].
    rate    Patches only: zero-order delivery rate [mg/h]. Defaults to
            dose spread over PATCH_WEAR_H.
    wear    Patches only: wear duration [hours]. Defaults to
            PATCH_WEAR_H when rate is derived from dose, and to
            open-ended otherwise."""

    params = kineticParams(route, ester)
    Vd = params.vdPerKG * checkWeight(weight)
    scale = NG_PER_ML if Ester(ester) is Ester.CPA else PG_PER_ML

    if Route(route) is Route.patchApply:
        if rate is None:
            rate = dose / PATCH_WEAR_H
            wear = PATCH_WEAR_H if wear is None else wear
        wear = np.inf if wear is None else wear
        C = _zero_order.model(t, params.formation * rate, params.ke, Vd, wear)
    else:
        C = _first_order.model(
            t, params.formation * dose, params.ka, params.ke, Vd
        )

    return scale * C
