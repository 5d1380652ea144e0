from collections import namedtuple
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
import math
from types import MappingProxyType
from typing import Union

import numpy as np

from hrtkit import piecewise


class ModelingError(ValueError):
    """A route and compound combination has no defined model."""


###################
### Enumerations ###


class Route(str, Enum):
    injection = "injection"
    oral = "oral"
    sublingual = "sublingual"
    patchApply = "patchApply"
    patchRemove = "patchRemove"
    gel = "gel"


class Ester(str, Enum):
    E2 = "E2"
    EB = "EB"
    EV = "EV"
    EC = "EC"
    EN = "EN"
    CPA = "CPA"


class LabUnit(str, Enum):
    pgmL = "pg/ml"
    pmolL = "pmol/l"


class ExtraKey(str, Enum):
    releaseRateUGPerDay = "releaseRateUGPerDay"
    sublingualTier = "sublingualTier"
    sublingualTheta = "sublingualTheta"
    gelSite = "gelSite"


ESTROGENS = frozenset((Ester.E2, Ester.EB, Ester.EV, Ester.EC, Ester.EN))

# Compounds each route can deliver.
ROUTE_ESTERS = MappingProxyType(
    {
        Route.injection: frozenset(
            (Ester.E2, Ester.EB, Ester.EV, Ester.EC, Ester.EN)
        ),
        Route.oral: frozenset((Ester.E2, Ester.EV, Ester.CPA)),
        Route.sublingual: frozenset((Ester.E2, Ester.EV)),
        Route.patchApply: frozenset((Ester.E2,)),
        Route.patchRemove: frozenset((Ester.E2,)),
        Route.gel: frozenset((Ester.E2,)),
    }
)


def isEstrogen(ester):
    return Ester(ester) in ESTROGENS


#################################
### Potency and Unit Conversion ###

# g/mol
MOLAR_MASS = MappingProxyType(
    {
        Ester.E2: 272.38,
        Ester.EB: 376.50,
        Ester.EV: 356.50,
        Ester.EC: 396.58,
        Ester.EN: 384.56,
        Ester.CPA: 416.94,
    }
)


def getToE2Factor(ester):
    """
    Returns the factor converting a mass of the given ester into the
    equivalent mass of estradiol. Esterified mass includes the ester
    chain, so every factor for an ester is below 1.

    Estradiol itself and cyproterone acetate both return the identity.
    Cyproterone acetate is never converted to estradiol equivalents;
    callers route it separately by checking isEstrogen()."""

    ester = Ester(ester)
    if ester is Ester.E2 or ester is Ester.CPA:
        return 1.0
    return MOLAR_MASS[Ester.E2] / MOLAR_MASS[ester]


def convertConcentrationUnits(value, fromUnit):
    """
    Convert an estradiol lab concentration to pg/mL.

    Parameters:
    ===========
    value     Concentration, scalar or ndarray.
    fromUnit  LabUnit (or its string value) that value is expressed in."""

    unit = LabUnit(fromUnit.lower() if isinstance(fromUnit, str) else fromUnit)
    if unit is LabUnit.pmolL:
        # 1 pmol/L of estradiol weighs MW pg/L, which is MW/1000 pg/mL
        return value * (MOLAR_MASS[Ester.E2] / 1000.0)
    return value


def convertToPmolL(value_pgmL):
    return value_pgmL / (MOLAR_MASS[Ester.E2] / 1000.0)


#######################
### Route Modifiers ###


@dataclass(frozen=True)
class NoModifiers:
    pass


@dataclass(frozen=True)
class PatchRate:
    ugPerDay: float


@dataclass(frozen=True)
class SublingualTier:
    index: int


@dataclass(frozen=True)
class SublingualCustom:
    theta: float


@dataclass(frozen=True)
class GelSite:
    index: int


RouteModifiers = Union[
    NoModifiers, PatchRate, SublingualTier, SublingualCustom, GelSite
]
_MODIFIER_TYPES = (
    NoModifiers,
    PatchRate,
    SublingualTier,
    SublingualCustom,
    GelSite,
)

ROUTE_MODIFIERS = MappingProxyType(
    {
        Route.injection: (NoModifiers,),
        Route.oral: (NoModifiers,),
        Route.sublingual: (NoModifiers, SublingualTier, SublingualCustom),
        Route.patchApply: (NoModifiers, PatchRate),
        Route.patchRemove: (NoModifiers,),
        Route.gel: (NoModifiers, GelSite),
    }
)


def isRouteModifiers(value):
    return isinstance(value, _MODIFIER_TYPES)


def checkModifiers(route, modifiers):
    route = Route(route)
    if not isinstance(modifiers, ROUTE_MODIFIERS[route]):
        raise ValueError(
            f"{type(modifiers).__name__} isn't a valid modifier for "
            f"route '{route.value}'."
        )
    return modifiers


def _finite(value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def modifiersFromExtras(route, extras):
    """
    Convert a JSON-style extras mapping into the modifier variant for
    route. Keys that don't apply to the route are ignored, and so are
    values that aren't finite numbers. A RouteModifiers value is
    checked against the route and passed through.

    Parameters:
    ===========
    route   Route (or its string value) of the dose.
    extras  Mapping of ExtraKey string values to numbers, None, or a
            RouteModifiers value."""

    route = Route(route)
    if isRouteModifiers(extras):
        return checkModifiers(route, extras)
    if not isinstance(extras, Mapping):
        return NoModifiers()

    if route is Route.sublingual:
        tier = _finite(extras.get(ExtraKey.sublingualTier.value))
        if tier is not None:
            return SublingualTier(int(tier))
        theta = _finite(extras.get(ExtraKey.sublingualTheta.value))
        if theta is not None:
            return SublingualCustom(theta)
    elif route is Route.patchApply:
        rate = _finite(extras.get(ExtraKey.releaseRateUGPerDay.value))
        if rate is not None and rate > 0.0:
            return PatchRate(rate)
    elif route is Route.gel:
        site = _finite(extras.get(ExtraKey.gelSite.value))
        if site is not None:
            return GelSite(int(site))

    return NoModifiers()


def modifiersToExtras(modifiers):
    if isinstance(modifiers, PatchRate):
        return {ExtraKey.releaseRateUGPerDay.value: modifiers.ugPerDay}
    elif isinstance(modifiers, SublingualTier):
        return {ExtraKey.sublingualTier.value: modifiers.index}
    elif isinstance(modifiers, SublingualCustom):
        return {ExtraKey.sublingualTheta.value: modifiers.theta}
    elif isinstance(modifiers, GelSite):
        return {ExtraKey.gelSite.value: modifiers.index}
    return {}


#########################
### Sublingual Tiers ###

TierParams = namedtuple("TierParams", ["hold", "theta"])

SL_TIER_ORDER = ("quick", "casual", "standard", "strict")
SL_DEFAULT_TIER = SL_TIER_ORDER.index("standard")

# hold is in minutes, theta is the fraction absorbed through the mucosa.
SublingualTierParams = MappingProxyType(
    {
        "quick": TierParams(hold=2.0, theta=0.01),
        "casual": TierParams(hold=5.0, theta=0.04),
        "standard": TierParams(hold=10.0, theta=0.11),
        "strict": TierParams(hold=15.0, theta=0.18),
    }
)

_SL_POINTS = sorted(SublingualTierParams.values(), key=lambda p: p.hold)
_theta_of_hold = piecewise.piecewiseLinear(
    [p.hold for p in _SL_POINTS],
    [p.theta for p in _SL_POINTS],
    extrapolate="linear",
)
_hold_of_theta = piecewise.piecewiseLinear(
    [p.theta for p in _SL_POINTS],
    [p.hold for p in _SL_POINTS],
    extrapolate="linear",
)


def thetaFromHold(holdMin):
    """
    Map a custom sublingual hold time in minutes to theta by
    interpolating the tier table, extrapolating outside it along the
    nearest segment. The result is clamped to [0, 1]."""

    if holdMin <= 0:
        return 0.0
    return float(np.clip(_theta_of_hold(max(1.0, holdMin)), 0.0, 1.0))


def holdFromTheta(theta):
    """Inverse of thetaFromHold, clamped to a hold of at least 1 minute."""

    return max(1.0, _hold_of_theta(theta))


def tierTheta(index):
    if isinstance(index, int) and 0 <= index < len(SL_TIER_ORDER):
        return SublingualTierParams[SL_TIER_ORDER[index]].theta
    return SublingualTierParams[SL_TIER_ORDER[SL_DEFAULT_TIER]].theta


def sublingualTheta(modifiers):
    if isinstance(modifiers, SublingualCustom):
        if not math.isfinite(modifiers.theta):
            return tierTheta(SL_DEFAULT_TIER)
        return min(1.0, max(0.0, modifiers.theta))
    elif isinstance(modifiers, SublingualTier):
        return tierTheta(modifiers.index)
    return tierTheta(SL_DEFAULT_TIER)


#######################
### Bioavailability ###

# First pass hepatic metabolism leaves only a small fraction of
# swallowed estradiol. Cyproterone acetate is well absorbed orally.
ORAL_BIOAVAILABILITY = MappingProxyType(
    {
        Ester.E2: 0.03,
        Ester.EV: 0.025,
        Ester.CPA: 0.88,
    }
)

GEL_SITE_ORDER = ("arm", "thigh", "scrotal")
GEL_DEFAULT_SITE = 0
GEL_SITE_BIOAVAILABILITY = MappingProxyType(
    {
        "arm": 0.05,
        "thigh": 0.05,
        "scrotal": 0.40,
    }
)


def gelSiteBioavailability(index):
    if not (isinstance(index, int) and 0 <= index < len(GEL_SITE_ORDER)):
        index = GEL_DEFAULT_SITE
    return GEL_SITE_BIOAVAILABILITY[GEL_SITE_ORDER[index]]


def checkSupported(route, ester):
    route = Route(route)
    ester = Ester(ester)
    if ester not in ROUTE_ESTERS[route]:
        raise ModelingError(
            f"There is no model for {ester.value} administered by route "
            f"'{route.value}'."
        )
    return route, ester


def getBioavailabilityMultiplier(route, ester, extras=None):
    """
    Fraction of an administered (estradiol-equivalent) dose that
    reaches systemic circulation.

    Raises ModelingError if the route can't deliver the compound.

    Parameters:
    ===========
    route   Route of administration.
    ester   Compound administered.
    extras  RouteModifiers value or JSON-style extras mapping (see
            modifiersFromExtras)."""

    route, ester = checkSupported(route, ester)
    modifiers = modifiersFromExtras(route, extras)

    if route is Route.oral:
        f = ORAL_BIOAVAILABILITY[ester]
    elif route is Route.sublingual:
        # The held share bypasses first pass, the rest is swallowed.
        theta = sublingualTheta(modifiers)
        f = theta + (1.0 - theta) * ORAL_BIOAVAILABILITY[ester]
    elif route is Route.gel:
        f = gelSiteBioavailability(
            modifiers.index if isinstance(modifiers, GelSite) else None
        )
    else:
        # Injections, and patches which vary by rate instead.
        f = 1.0

    return min(1.0, max(0.0, f))
