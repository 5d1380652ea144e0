import numpy as np
from scipy import interpolate


def piecewiseLinear(x, y, extrapolate="flat"):
    """
    Build a piecewise-linear function through the (x, y) knots.

    Knots are sorted by x before interpolating, and y values at
    duplicate x are averaged so the function stays single-valued.
    The returned function accepts a scalar (returning a float) or an
    array-like (returning an ndarray).

    Parameters:
    ===========
    x            Sequence of knot positions.
    y            Sequence of knot values, same length as x.
    extrapolate  Policy outside [min(x), max(x)]:
                    'flat':   hold the first/last value constant.
                    'linear': continue the slope of the nearest
                              segment."""

    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    if x.ndim != 1 or x.shape != y.shape:
        raise ValueError(
            f"Knots must be two 1D sequences of equal length, but got "
            f"{x.shape=} and {y.shape=}."
        )
    if len(x) == 0:
        raise ValueError("Need at least one knot to interpolate.")
    if extrapolate not in ("flat", "linear"):
        raise ValueError(f"extrapolate policy '{extrapolate}' isn't valid.")

    ux, inverse = np.unique(x, return_inverse=True)
    uy = np.bincount(inverse, weights=y) / np.bincount(inverse)

    if len(ux) == 1:
        # interp1d needs two knots; a single knot is a constant under
        # either policy.
        value = uy[0]

        def f(t):
            if np.ndim(t) == 0:
                return float(value)
            return np.full(np.shape(t), value, dtype=np.float64)

        return f

    if extrapolate == "flat":
        fill_value = (uy[0], uy[-1])
    else:
        fill_value = "extrapolate"

    interp = interpolate.interp1d(
        ux,
        uy,
        kind="linear",
        bounds_error=False,
        fill_value=fill_value,
        assume_sorted=True,
    )

    def f(t):
        if np.ndim(t) == 0:
            return float(interp(float(t)))
        return interp(np.asarray(t, dtype=np.float64))

    return f
