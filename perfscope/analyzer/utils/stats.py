"""
Numeric helpers shared by the analytics services
"""

import math
from typing import Optional, Sequence

import numpy as np

from ..models import LinearTrend, MannKendallResult, SeriesStatistics


def mean(values: Sequence[float], default: float = 0.0) -> float:
    if len(values) == 0:
        return default
    return float(np.mean(values))


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def pearson(xs: Sequence[float], ys: Sequence[float]) -> float:
    """
    Pearson coefficient over the pairs up to the shorter series' length.

    Degenerate inputs do not raise:
    - no pairs: 0
    - one pair: similarity 1 - |x - y| / max(|x|, |y|), clamped to [-1, 1]
    - zero variance: 1 when both series are the same constant, else 0
    """
    n = min(len(xs), len(ys))
    if n == 0:
        return 0.0
    x = np.asarray(xs[:n], dtype=float)
    y = np.asarray(ys[:n], dtype=float)

    if n == 1:
        scale = max(abs(x[0]), abs(y[0]))
        if scale == 0:
            return 1.0
        return clamp(1 - abs(x[0] - y[0]) / scale, -1.0, 1.0)

    dx = x - x.mean()
    dy = y - y.mean()
    denominator = math.sqrt(float(np.sum(dx * dx)) * float(np.sum(dy * dy)))
    if denominator == 0:
        x_const = np.allclose(x, x[0])
        y_const = np.allclose(y, y[0])
        if x_const and y_const and math.isclose(x[0], y[0]):
            return 1.0
        return 0.0
    return clamp(float(np.sum(dx * dy)) / denominator, -1.0, 1.0)


def approximate_p_value(t_stat: float, degrees_of_freedom: int) -> float:
    """Stepped lookup, good enough to rank trends"""
    if degrees_of_freedom <= 0:
        return 1.0
    t_stat = abs(t_stat)
    if t_stat > 3:
        return 0.001
    if t_stat > 2.5:
        return 0.01
    if t_stat > 2:
        return 0.05
    if t_stat > 1.5:
        return 0.1
    return 0.2


def linear_trend(values: Sequence[float], xs: Optional[Sequence[float]] = None) -> LinearTrend:
    """
    Ordinary least squares fit of values against xs (sample index when xs is None).

    Returns a flat trend when fewer than 3 points are given.
    """
    n = len(values)
    if n < 3:
        return LinearTrend(sample_size=n)

    y = np.asarray(values, dtype=float)
    x = np.arange(n, dtype=float) if xs is None else np.asarray(xs, dtype=float)
    x_mean = x.mean()
    y_mean = y.mean()
    sxx = float(np.sum((x - x_mean) ** 2))
    slope = float(np.sum((x - x_mean) * (y - y_mean))) / sxx if sxx else 0.0
    intercept = float(y_mean - slope * x_mean)

    predicted = slope * x + intercept
    total_ss = float(np.sum((y - y_mean) ** 2))
    residual_ss = float(np.sum((y - predicted) ** 2))
    r_squared = 1 - residual_ss / total_ss if total_ss else 0.0
    correlation = math.sqrt(abs(r_squared)) * (1 if slope > 0 else -1 if slope < 0 else 0)

    if sxx == 0:
        p_value = 1.0
    elif residual_ss == 0:
        p_value = 0.001 if slope != 0 else 1.0
    else:
        standard_error = math.sqrt(residual_ss / (n - 2)) / math.sqrt(sxx)
        p_value = approximate_p_value(slope / standard_error, n - 2)

    return LinearTrend(
        slope=slope,
        intercept=intercept,
        r_squared=r_squared,
        correlation=correlation,
        p_value=p_value,
        is_significant=p_value < 0.05 and abs(r_squared) > 0.1,
        sample_size=n,
    )


def residual_standard_error(xs: Sequence[float], ys: Sequence[float], trend: LinearTrend) -> Optional[float]:
    n = len(ys)
    if n <= 2:
        return None
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    residual_ss = float(np.sum((y - (trend.slope * x + trend.intercept)) ** 2))
    return math.sqrt(residual_ss / (n - 2))


def exponential_smoothing(values: Sequence[float], alpha: float = 0.3, horizon: int = 0) -> list[float]:
    """
    s_t = alpha * x_t + (1 - alpha) * s_{t-1}, seeded with the first value.

    `horizon` extra points hold the last smoothed level.
    """
    if not 0 < alpha <= 1:
        raise ValueError(f'alpha must be in (0, 1], got {alpha}')
    if len(values) == 0:
        return []
    smoothed = [float(values[0])]
    for value in values[1:]:
        smoothed.append(alpha * float(value) + (1 - alpha) * smoothed[-1])
    smoothed.extend([smoothed[-1]] * horizon)
    return smoothed


def moving_average(values: Sequence[float], window: int) -> list[float]:
    """Centered moving average; the input is returned unchanged for an unusable window."""
    n = len(values)
    if window <= 0 or window > n:
        return [float(v) for v in values]
    result = []
    for i in range(n):
        start = max(0, i - window // 2)
        end = min(n, start + window)
        result.append(float(np.mean(values[start:end])))
    return result


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Linear interpolation between closest ranks"""
    if len(sorted_values) == 0:
        return 0.0
    return float(np.percentile(np.asarray(sorted_values, dtype=float), p, method='linear'))


def describe(values: Sequence[float]) -> SeriesStatistics:
    if len(values) == 0:
        return SeriesStatistics()
    data = np.asarray(values, dtype=float)
    q1 = percentile(data, 25)
    q3 = percentile(data, 75)
    iqr = q3 - q1
    lower, upper = q1 - 1.5 * iqr, q3 + 1.5 * iqr
    return SeriesStatistics(
        mean=float(data.mean()),
        median=percentile(data, 50),
        standard_deviation=float(data.std()),
        min=float(data.min()),
        max=float(data.max()),
        percentile_25=q1,
        percentile_75=q3,
        percentile_90=percentile(data, 90),
        percentile_95=percentile(data, 95),
        outliers=[float(v) for v in data if v < lower or v > upper],
    )


def percentile_rank(value: float, values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    below = sum(1 for v in values if v < value)
    return below / len(values) * 100


def z_score_severity(z: float) -> str:
    if z > 4:
        return 'critical'
    if z > 3:
        return 'high'
    if z > 2.5:
        return 'medium'
    return 'low'


def mann_kendall(values: Sequence[float]) -> MannKendallResult:
    n = len(values)
    if n < 4:
        return MannKendallResult()
    s = 0
    for i in range(n - 1):
        for j in range(i + 1, n):
            if values[j] > values[i]:
                s += 1
            elif values[j] < values[i]:
                s -= 1
    tau = s / (n * (n - 1) / 2)
    variance = n * (n - 1) * (2 * n + 5) / 18
    z = abs(s) / math.sqrt(variance)
    if abs(tau) < 0.1:
        trend = 'no_trend'
    else:
        trend = 'increasing' if tau > 0 else 'decreasing'
    return MannKendallResult(tau=tau, is_significant=z > 1.96, trend=trend)


def correlation_significance(r: float, sample_size: int) -> float:
    """
    1 - p for a Pearson coefficient, with p approximated by
    exp(-0.5 t^2) * (1 + |t| / df) and t = r * sqrt((n - 2) / (1 - r^2)).
    Not an exact Student's t CDF.
    """
    if sample_size < 3:
        return 0.0
    df = sample_size - 2
    if abs(r) >= 1:
        return 1.0
    t = r * math.sqrt(df / (1 - r * r))
    p_value = math.exp(-0.5 * t * t) * (1 + abs(t) / df)
    return clamp(1 - p_value, 0.0, 1.0)
