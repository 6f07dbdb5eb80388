import math

from labengine.services.errors import InsufficientData, NoBracket
from labengine.services.schema import OPTIMUM_MAX, OPTIMUM_QUADRATIC

DEFAULT_REFERENCE_BLOWS = 25.0


def sorted_points(points):
    clean = [(float(x), float(y)) for x, y in points if x is not None and y is not None]
    return sorted(clean, key=lambda p: (p[0], p[1]))


def select_optimum(points, method=OPTIMUM_MAX):
    """Pick the optimum (x, y) from compaction-curve points.

    ``max`` reports the observed point with the highest y. ``quadratic`` fits
    y = a*x^2 + b*x + c and reports the vertex, falling back to the observed
    maximum when the fit is degenerate, opens upward or peaks outside the
    sampled moisture range. Returns ``(x, y, method_used)``.
    """
    pts = sorted_points(points)
    if not pts:
        raise InsufficientData("No curve points")
    max_pt = max(pts, key=lambda p: p[1])
    if method != OPTIMUM_QUADRATIC or len(pts) < 3:
        return max_pt[0], max_pt[1], "max-observed"

    solved = fit_quadratic(pts)
    if not solved:
        return max_pt[0], max_pt[1], "max-observed"
    a, b, c = solved
    if a >= -1e-9:
        return max_pt[0], max_pt[1], "max-observed"

    xv = -b / (2 * a)
    yv = a * xv * xv + b * xv + c
    lo, hi = pts[0][0], pts[-1][0]
    if xv < lo or xv > hi or yv <= 0:
        return max_pt[0], max_pt[1], "max-observed"
    return xv, yv, "quadratic-fit"


def flow_curve_interpolate(points, reference=DEFAULT_REFERENCE_BLOWS):
    """Liquid limit by the flow-curve method.

    ``points`` are (blows, moisture %) pairs. After sorting by blow count the
    first adjacent pair that straddles ``reference`` is interpolated linearly
    in log10(blows). Raises InsufficientData with fewer than two usable points
    and NoBracket when no pair straddles the reference.
    """
    pts = [p for p in sorted_points(points) if p[0] > 0]
    if len(pts) < 2:
        raise InsufficientData(f"Need at least two points around {reference:g} blows")

    for (x1, y1), (x2, y2) in zip(pts, pts[1:]):
        if x1 <= reference <= x2:
            if x1 == x2:
                return (y1 + y2) / 2.0
            lx1 = math.log10(x1)
            lx2 = math.log10(x2)
            target = math.log10(reference)
            return y1 + ((y2 - y1) / (lx2 - lx1)) * (target - lx1)

    raise NoBracket(f"No two points straddle {reference:g} blows")


def data_range(points):
    pts = sorted_points(points)
    if not pts:
        return None
    return pts[0][0], pts[-1][0]


def fit_quadratic(points):
    if len(points) < 3:
        return None
    xs = [float(p[0]) for p in points]
    ys = [float(p[1]) for p in points]
    s1 = sum(xs)
    s2 = sum(x * x for x in xs)
    s3 = sum(x * x * x for x in xs)
    s4 = sum(x * x * x * x for x in xs)
    sy = sum(ys)
    sxy = sum(x * y for x, y in zip(xs, ys))
    sx2y = sum((x * x) * y for x, y in zip(xs, ys))
    return _gauss3(
        [
            [s4, s3, s2, sx2y],
            [s3, s2, s1, sxy],
            [s2, s1, len(xs), sy],
        ]
    )


def _gauss3(A):
    m = [row[:] for row in A]
    for col in range(3):
        pivot = max(range(col, 3), key=lambda r: abs(m[r][col]))
        if abs(m[pivot][col]) < 1e-12:
            return None
        if pivot != col:
            m[col], m[pivot] = m[pivot], m[col]
        div = m[col][col]
        for k in range(col, 4):
            m[col][k] /= div
        for r in range(3):
            if r == col:
                continue
            factor = m[r][col]
            for k in range(col, 4):
                m[r][k] -= factor * m[col][k]
    return [m[0][3], m[1][3], m[2][3]]
