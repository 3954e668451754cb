"""Double-logistic fitting with a Nelder-Mead simplex over a robust loss."""
import logging
import math

import numpy as np

from phenoflow.models.phenology import DLParams, FieldFit

logger = logging.getLogger(__name__)

# Simplex coefficients: reflect, expand, contract, shrink
ALPHA, GAMMA, RHO, SIGMA = 1.0, 2.0, 0.5, 0.5

# Initial simplex step per parameter [mn, mx, sos, rsp, eos, rau]
SIMPLEX_STEPS = np.array([0.1, 0.1, 20.0, 0.02, 20.0, 0.02])

F_TOLERANCE = 1e-12
X_TOLERANCE = 1e-7

DEFAULT_GUESS = DLParams(mn=0.1, mx=0.6, sos=120.0, rsp=0.05, eos=280.0, rau=0.05)

VIABLE_RMSE_FACTOR = 1.5
DEGENERATE_MARGIN = 0.05
PERTURBED_MARGIN = 0.1


def bounds_for_mode(mode="ndvi"):
    """Lower/upper parameter bounds; DVI peaks can exceed NDVI's range."""
    mx_hi = 1.5 if mode == "dvi" else 1.2
    lower = np.array([-0.5, 0.0, 1.0, 0.001, 1.0, 0.001])
    upper = np.array([0.8, mx_hi, 366.0, 0.6, 366.0, 0.6])
    return lower, upper


def curve(x, t):
    """Evaluate the model for a parameter vector [mn, mx, sos, rsp, eos, rau]."""
    mn, mx, sos, rsp, eos, rau = x
    with np.errstate(over="ignore"):
        spring = 1.0 / (1.0 + np.exp(-rsp * (t - sos)))
        autumn = 1.0 / (1.0 + np.exp(rau * (t - eos)))
    return mn + (mx - mn) * (spring + autumn - 1.0)


def huber_loss(residuals, delta=0.10):
    """Mean Huber loss: quadratic for |r| <= delta, linear beyond."""
    r = np.abs(residuals)
    if r.size == 0:
        return math.inf
    loss = np.where(r <= delta, 0.5 * r * r, delta * (r - 0.5 * delta))
    return float(loss.mean())


def rmse(params, doys, values):
    """Root-mean-square error of a fit; inf without data."""
    doys = np.asarray(doys, dtype=float)
    if doys.size == 0:
        return math.inf
    x = params.as_array() if isinstance(params, DLParams) else params
    diff = curve(x, doys) - np.asarray(values, dtype=float)
    return float(np.sqrt(np.mean(diff * diff)))


def clamp(x, lower, upper):
    """Project onto the bounds and keep mx strictly above mn."""
    c = np.clip(x, lower, upper)
    if c[1] <= c[0]:
        c[1] = c[0] + DEGENERATE_MARGIN
    return c


def season_violation(x, min_length, max_length):
    """Days by which eos - sos falls outside [min_length, max_length]."""
    length = x[4] - x[2]
    return max(0.0, min_length - length) + max(0.0, length - max_length)


def nelder_mead(cost, x0, steps=SIMPLEX_STEPS, max_iter=2000, ftol=F_TOLERANCE, xtol=X_TOLERANCE):
    """
    Minimize ``cost`` from ``x0``.

    Converges when both the spread of cost values and the step-normalized
    spread of vertices are below tolerance. Always returns the best vertex.

    Returns:
        tuple: (best x, best cost, iterations)
    """
    n = len(x0)
    simplex = np.empty((n + 1, n))
    simplex[0] = x0
    for i in range(n):
        simplex[i + 1] = x0
        simplex[i + 1, i] += steps[i]
    fvals = np.array([cost(v) for v in simplex])

    iteration = 0
    for iteration in range(1, max_iter + 1):
        order = np.argsort(fvals, kind="stable")
        simplex, fvals = simplex[order], fvals[order]

        f_spread = fvals[-1] - fvals[0]
        x_spread = np.max(np.abs(simplex[1:] - simplex[0]) / steps)
        if f_spread <= ftol and x_spread <= xtol:
            break

        centroid = simplex[:-1].mean(axis=0)
        worst = simplex[-1]

        reflected = centroid + ALPHA * (centroid - worst)
        f_reflected = cost(reflected)

        if f_reflected < fvals[0]:
            expanded = centroid + GAMMA * (reflected - centroid)
            f_expanded = cost(expanded)
            if f_expanded < f_reflected:
                simplex[-1], fvals[-1] = expanded, f_expanded
            else:
                simplex[-1], fvals[-1] = reflected, f_reflected
        elif f_reflected < fvals[-2]:
            simplex[-1], fvals[-1] = reflected, f_reflected
        else:
            if f_reflected < fvals[-1]:
                base, f_base = reflected, f_reflected
            else:
                base, f_base = worst, fvals[-1]
            contracted = centroid + RHO * (base - centroid)
            f_contracted = cost(contracted)
            if f_contracted < f_base:
                simplex[-1], fvals[-1] = contracted, f_contracted
            else:
                simplex[1:] = simplex[0] + SIGMA * (simplex[1:] - simplex[0])
                fvals[1:] = [cost(v) for v in simplex[1:]]

    best = int(np.argmin(fvals))
    return simplex[best].copy(), float(fvals[best]), iteration


def initial_guess(doys, values):
    """
    Starting parameters from the data.

    mn/mx come from the 10th/90th percentile; sos/eos from the first rising
    and last falling midpoint crossings, else fractions of the observed range.
    """
    doys = np.asarray(doys, dtype=float)
    values = np.asarray(values, dtype=float)
    if doys.size == 0:
        return DEFAULT_GUESS

    ranked = np.sort(values)
    n = ranked.size
    mn = float(ranked[max(0, n // 10)])
    mx = float(ranked[min(n - 1, n - 1 - n // 10)])
    if mx <= mn:
        mx = mn + PERTURBED_MARGIN
    mid = (mn + mx) / 2

    order = np.argsort(doys, kind="stable")
    t, v = doys[order], values[order]
    sos = eos = None
    for i in range(1, n):
        if v[i - 1] < mid <= v[i]:
            sos = float(t[i])
            break
    for i in range(n - 1, 0, -1):
        if v[i - 1] >= mid > v[i]:
            eos = float(t[i])
            break

    span = t[-1] - t[0]
    if sos is None:
        sos = float(t[0] + 0.25 * span) if span > 0 else DEFAULT_GUESS.sos
    if eos is None or eos <= sos:
        eos = float(t[0] + 0.75 * span) if span > 0 else DEFAULT_GUESS.eos
        if eos <= sos:
            eos = sos + (DEFAULT_GUESS.eos - DEFAULT_GUESS.sos)

    return DLParams(mn=mn, mx=mx, sos=sos, rsp=0.05, eos=eos, rau=0.05)


def filter_cycle_contamination(doys, values):
    """
    Trim samples that belong to an adjacent growing cycle.

    Leading samples above a peak-relative threshold that are still falling,
    and trailing ones that are already rising, are removed when they lie more
    than 30 days from the dominant (3-point smoothed) peak.

    Returns:
        tuple: (doys, values) sorted by day of year
    """
    doys = np.asarray(doys, dtype=float)
    values = np.asarray(values, dtype=float)
    order = np.argsort(doys, kind="stable")
    t, v = doys[order], values[order]
    n = t.size
    if n < 6:
        return t, v

    smoothed = (v[:-2] + v[1:-1] + v[2:]) / 3
    peak_index = int(np.argmax(smoothed)) + 1
    peak_value = float(smoothed[peak_index - 1])
    peak_doy = t[peak_index]

    baseline = float(np.sort(v)[max(0, n // 5)])
    threshold = baseline + (peak_value - baseline) * 0.4

    start = 0
    if v[0] > threshold and t[0] < peak_doy - 30:
        for i in range(min(n // 3, n - 1)):
            if v[i] > threshold and v[i + 1] < v[i] and t[i] < peak_doy - 30:
                start = i + 1
            else:
                break

    end = n - 1
    if v[-1] > threshold and t[-1] > peak_doy + 30:
        for i in range(n - 1, max(n * 2 // 3, 1) - 1, -1):
            if v[i] > threshold and v[i - 1] < v[i] and t[i] > peak_doy + 30:
                end = i - 1
            else:
                break

    return t[start:end + 1], v[start:end + 1]


def fit(doys, values, initial, settings, max_iter=None):
    """
    Fit one double logistic from ``initial``.

    Minimizes mean Huber loss plus a penalty per day of season-length
    violation; parameters are clamped on every evaluation. The reported
    RMSE is recomputed on the final parameters.

    Args:
        doys: Day-of-year samples
        values: VI samples
        initial: Starting DLParams
        settings: FitSettings
        max_iter: Override for ``settings.max_iter``

    Returns:
        DLParams with ``rmse`` set
    """
    doys = np.asarray(doys, dtype=float)
    values = np.asarray(values, dtype=float)
    lower, upper = bounds_for_mode(settings.vi_mode)
    delta = settings.huber_delta
    penalty = settings.season_penalty
    min_len, max_len = settings.min_season_length, settings.max_season_length

    def cost(x):
        p = clamp(x, lower, upper)
        loss = huber_loss(curve(p, doys) - values, delta)
        return loss + penalty * season_violation(p, min_len, max_len)

    x0 = clamp(initial.as_array(), lower, upper)
    best, _, _ = nelder_mead(cost, x0, max_iter=max_iter or settings.max_iter)
    best = clamp(best, lower, upper)
    return DLParams.from_array(best, rmse=rmse(best, doys, values))


def perturb(params, perturbation, slope_perturbation, settings, rng):
    """
    Multiplicative uniform perturbation ``p * (1 + U(-f, f))``.

    The slope parameters use the tighter ``slope_perturbation``.
    """
    lower, upper = bounds_for_mode(settings.vi_mode)
    x = params.as_array()
    fractions = np.array([perturbation, perturbation, perturbation,
                          slope_perturbation, perturbation, slope_perturbation])
    x = x * (1.0 + rng.uniform(-fractions, fractions))
    x = np.clip(x, lower, upper)
    x[4] = min(max(x[4], x[2] + settings.min_season_length), x[2] + settings.max_season_length)
    if x[1] <= x[0]:
        x[1] = x[0] + PERTURBED_MARGIN
    return DLParams.from_array(x)


def ensemble_fit(doys, values, settings, rng, n_runs=None, perturbation=None,
                 slope_perturbation=None):
    """
    Best-of-N fit from one unperturbed and ``n_runs - 1`` perturbed starts.

    Args:
        doys: Day-of-year samples
        values: VI samples
        settings: FitSettings
        rng: numpy Generator
        n_runs: Default ``settings.field_ensemble_runs``
        perturbation: Default ``settings.perturbation``
        slope_perturbation: Default ``settings.slope_perturbation``

    Returns:
        FieldFit with the lowest-RMSE fit and every run within 1.5x of it
    """
    n_runs = n_runs or settings.field_ensemble_runs
    perturbation = settings.perturbation if perturbation is None else perturbation
    if slope_perturbation is None:
        slope_perturbation = settings.slope_perturbation

    t, v = filter_cycle_contamination(doys, values)
    guess = initial_guess(t, v)

    fits = [fit(t, v, guess, settings)]
    for _ in range(1, n_runs):
        start = perturb(guess, perturbation, slope_perturbation, settings, rng)
        fits.append(fit(t, v, start, settings))

    fits.sort(key=lambda p: p.rmse)
    best = fits[0]
    viable = [p for p in fits if p.rmse <= best.rmse * VIABLE_RMSE_FACTOR]
    logger.debug(
        "Ensemble fit: %d runs, best RMSE %.4f, %d viable", n_runs, best.rmse, len(viable)
    )
    return FieldFit(best=best, ensemble=viable, n_observations=int(t.size))


def pixel_fit(doys, values, field_params, settings, rng):
    """
    Fit one pixel seeded from the converged field fit.

    Returns the field parameters with ``rmse = inf`` when fewer than
    ``settings.min_observations`` samples survive filtering.
    """
    t, v = filter_cycle_contamination(doys, values)
    if t.size < settings.min_observations:
        return field_params.with_rmse(math.inf)

    best = fit(t, v, field_params, settings)
    for _ in range(1, settings.pixel_ensemble_runs):
        start = perturb(field_params, settings.perturbation, settings.slope_perturbation, settings, rng)
        candidate = fit(t, v, start, settings)
        if candidate.rmse < best.rmse:
            best = candidate
    return best
