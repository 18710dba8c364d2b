import logging
import math
import numbers
import warnings
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, List, Optional, Any, Sequence

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests
from statsmodels.stats.power import tt_ind_solve_power


logger = logging.getLogger(__name__)

# Degrees of freedom above which the approximate method switches to the normal CDF
NORMAL_APPROXIMATION_DF = 30

CORRECTION_METHODS = ('none', 'bonferroni', 'holm', 'fdr_bh')


class SignificanceError(Exception):
    """Base class for significance estimation failures"""


class InvalidSampleError(SignificanceError, ValueError):
    """A sample summary cannot support a two-sample t-test"""


class ZeroVarianceError(SignificanceError, ZeroDivisionError):
    """Pooled standard deviation is zero, so the t-statistic is undefined"""


class PValueMethod(Enum):
    EXACT = "exact"
    APPROXIMATE = "approximate"


class ZeroVariancePolicy(Enum):
    RAISE = "raise"
    SHORT_CIRCUIT = "short_circuit"


@dataclass(frozen=True)
class SampleSummary:
    sample_size: int
    mean: float
    std_dev: float


@dataclass(frozen=True)
class SignificanceResult:
    t_statistic: float
    p_value: float
    degrees_of_freedom: int
    effect_size: float
    is_significant: bool
    confidence: float
    p_value_method: PValueMethod = PValueMethod.EXACT

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict for json.dumps; non-finite statistics become None"""
        data = {key: finite_or_none(value) for key, value in asdict(self).items()}
        data['p_value_method'] = self.p_value_method.value
        return data


@dataclass(frozen=True)
class SignificanceConfig:
    confidence_level: float = 0.95
    p_value_method: PValueMethod = PValueMethod.EXACT
    zero_variance_policy: ZeroVariancePolicy = ZeroVariancePolicy.RAISE

    def __post_init__(self):
        _validate_confidence_level(self.confidence_level)
        # Frozen, so coerce enum values given as plain strings through object.__setattr__
        object.__setattr__(self, 'p_value_method', PValueMethod(self.p_value_method))
        object.__setattr__(self, 'zero_variance_policy', ZeroVariancePolicy(self.zero_variance_policy))


def _validate_confidence_level(confidence_level: float) -> None:
    if isinstance(confidence_level, bool) or not isinstance(confidence_level, numbers.Real):
        raise ValueError(f"Confidence level must be a number, got {confidence_level!r}")
    if not 0 < confidence_level < 1:
        raise ValueError(f"Confidence level must be between 0 and 1, got {confidence_level}")


def _validate_sample(summary: SampleSummary, label: str) -> None:
    """Reject summaries that leave the t-test without degrees of freedom"""
    n = summary.sample_size
    if isinstance(n, bool) or not isinstance(n, numbers.Integral):
        raise InvalidSampleError(f"{label} sample size must be an integer, got {n!r}")
    if n < 2:
        raise InvalidSampleError(f"{label} sample size must be at least 2, got {n}")
    if not math.isfinite(summary.mean):
        raise InvalidSampleError(f"{label} mean must be finite, got {summary.mean}")
    if not math.isfinite(summary.std_dev) or summary.std_dev < 0:
        raise InvalidSampleError(
            f"{label} standard deviation must be finite and non-negative, got {summary.std_dev}"
        )


def _two_tailed_p_value(t_statistic: float, df: int, method: PValueMethod) -> float:
    abs_t = abs(t_statistic)

    if method == PValueMethod.EXACT:
        p_value = 2 * stats.t.sf(abs_t, df)
    elif df > NORMAL_APPROXIMATION_DF:
        p_value = 2 * stats.norm.sf(abs_t)
    else:
        warnings.warn(
            f"Closed-form t approximation used with {df} degrees of freedom; "
            "p-value may be inaccurate for small samples",
            UserWarning,
            stacklevel=3
        )
        p_value = (df / (df + abs_t ** 2)) ** (df / 2)

    return float(min(max(p_value, 0.0), 1.0))


def _zero_variance_result(
    mean_difference: float,
    df: int,
    alpha: float,
    method: PValueMethod
) -> SignificanceResult:
    """Decide on means alone when neither sample has any spread"""
    if mean_difference == 0:
        return SignificanceResult(
            t_statistic=0.0,
            p_value=1.0,
            degrees_of_freedom=df,
            effect_size=0.0,
            is_significant=False,
            confidence=0.0,
            p_value_method=method
        )

    signed_inf = math.copysign(math.inf, mean_difference)
    return SignificanceResult(
        t_statistic=signed_inf,
        p_value=0.0,
        degrees_of_freedom=df,
        effect_size=signed_inf,
        is_significant=0.0 < alpha,
        confidence=1.0,
        p_value_method=method
    )


def compute_significance(
    control: SampleSummary,
    treatment: SampleSummary,
    confidence_level: float = 0.95,
    *,
    p_value_method: PValueMethod = PValueMethod.EXACT,
    zero_variance_policy: ZeroVariancePolicy = ZeroVariancePolicy.RAISE
) -> SignificanceResult:
    """
    Two-sample pooled t-test of treatment against control from summary statistics.

    Args:
        control: Summary of the control variation
        treatment: Summary of the treatment variation
        confidence_level: Required confidence, significance threshold is 1 - confidence_level
        p_value_method: EXACT uses the Student's t distribution, APPROXIMATE reproduces
            the piecewise normal/closed-form estimate used by older reports
        zero_variance_policy: What to do when the pooled standard deviation is zero

    Returns:
        SignificanceResult with t-statistic, two-tailed p-value and Cohen's d

    Raises:
        InvalidSampleError: A sample has fewer than 2 observations or a bad mean/std
        ZeroVarianceError: Pooled std is zero and the policy is RAISE
    """
    _validate_confidence_level(confidence_level)
    p_value_method = PValueMethod(p_value_method)
    zero_variance_policy = ZeroVariancePolicy(zero_variance_policy)
    _validate_sample(control, 'Control')
    _validate_sample(treatment, 'Treatment')

    n1, n2 = control.sample_size, treatment.sample_size
    s1, s2 = control.std_dev, treatment.std_dev
    df = int(n1 + n2 - 2)
    alpha = 1 - confidence_level
    mean_difference = treatment.mean - control.mean

    pooled_std = math.sqrt(((n1 - 1) * s1 ** 2 + (n2 - 1) * s2 ** 2) / df)

    if pooled_std == 0:
        if zero_variance_policy == ZeroVariancePolicy.RAISE:
            raise ZeroVarianceError(
                "Pooled standard deviation is zero; insufficient variance to determine significance"
            )
        logger.debug("Zero pooled variance, deciding on means alone (difference=%s)", mean_difference)
        return _zero_variance_result(mean_difference, df, alpha, p_value_method)

    t_statistic = mean_difference / (pooled_std * math.sqrt(1 / n1 + 1 / n2))
    p_value = _two_tailed_p_value(t_statistic, df, p_value_method)

    # Cohen's d
    effect_size = mean_difference / pooled_std

    result = SignificanceResult(
        t_statistic=t_statistic,
        p_value=p_value,
        degrees_of_freedom=df,
        effect_size=effect_size,
        is_significant=p_value < alpha,
        confidence=1 - p_value,
        p_value_method=p_value_method
    )
    logger.debug(
        "t=%.4f df=%d p=%.6f d=%.4f significant=%s",
        t_statistic, df, p_value, effect_size, result.is_significant
    )
    return result


def summarize_sample(values: Sequence[float]) -> SampleSummary:
    """Build a SampleSummary from raw observations, ignoring NaN"""
    data = np.asarray(values, dtype=float)
    data = data[~np.isnan(data)]

    if len(data) == 0:
        raise InvalidSampleError("Cannot summarize an empty sample")

    std_dev = float(np.std(data, ddof=1)) if len(data) > 1 else 0.0
    return SampleSummary(
        sample_size=int(len(data)),
        mean=float(np.mean(data)),
        std_dev=std_dev
    )


def summarize_groups(
    data: pd.DataFrame,
    group_column: str,
    metric: str
) -> Dict[str, SampleSummary]:
    """Summarize a metric per group, keeping groups in order of first appearance"""
    missing = [column for column in (group_column, metric) if column not in data.columns]
    if missing:
        raise ValueError(f"Columns not found in data: {', '.join(missing)}")

    grouped = (
        data.dropna(subset=[metric])
        .groupby(group_column, sort=False)[metric]
        .agg(['count', 'mean', 'std'])
    )

    return {
        str(group): SampleSummary(
            sample_size=int(row['count']),
            mean=float(row['mean']),
            std_dev=0.0 if pd.isna(row['std']) else float(row['std'])
        )
        for group, row in grouped.iterrows()
    }


def _noncentral_t_power(effect_size: float, n1: int, n2: int, alpha: float) -> float:
    """Two-sided t-test power from both noncentral t tails, normal tails if those fail"""
    df = n1 + n2 - 2
    noncentrality = effect_size * math.sqrt(n1 * n2 / (n1 + n2))
    critical = stats.t.isf(alpha / 2, df)

    # Miss probability is negligible this far past the critical value
    if noncentrality - critical > 10:
        return 1.0

    power = stats.nct.sf(critical, df, noncentrality) + stats.nct.cdf(-critical, df, noncentrality)
    if not math.isfinite(power):
        power = stats.norm.sf(critical - noncentrality) + stats.norm.cdf(-critical - noncentrality)
    return float(power)


def finite_or_none(value: Any) -> Any:
    """Map inf/nan floats to None so json.dumps emits standard JSON"""
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


class StatisticalEngine:
    """Significance estimation with a fixed default configuration"""

    def __init__(self, config: Optional[SignificanceConfig] = None):
        self.config = config or SignificanceConfig()

    def compute_significance(
        self,
        control: SampleSummary,
        treatment: SampleSummary,
        confidence_level: Optional[float] = None
    ) -> SignificanceResult:
        """Compare treatment against control using the engine configuration"""
        return compute_significance(
            control,
            treatment,
            confidence_level if confidence_level is not None else self.config.confidence_level,
            p_value_method=self.config.p_value_method,
            zero_variance_policy=self.config.zero_variance_policy
        )

    def calculate_statistical_power(
        self,
        effect_size: float,
        control_size: int,
        treatment_size: int,
        significance_level: Optional[float] = None
    ) -> float:
        """Post-hoc power of the two-sample t-test for an observed Cohen's d"""
        if significance_level is None:
            alpha = 1 - self.config.confidence_level
        else:
            alpha = significance_level
        if not 0 < alpha < 1:
            raise ValueError(f"Significance level must be between 0 and 1, got {alpha}")

        if not math.isfinite(effect_size):
            return 1.0

        power = float(tt_ind_solve_power(
            effect_size=abs(effect_size),
            nobs1=control_size,
            alpha=alpha,
            power=None,
            ratio=treatment_size / control_size,
            alternative='two-sided'
        ))

        # statsmodels' noncentral t tail returns nan for large noncentrality
        if not math.isfinite(power):
            power = _noncentral_t_power(abs(effect_size), control_size, treatment_size, alpha)

        return min(max(power, 0.0), 1.0)

    def correct_multiple_comparisons(
        self,
        p_values: List[float],
        method: str = 'bonferroni'
    ) -> List[float]:
        """Apply multiple comparison corrections"""
        if method not in CORRECTION_METHODS:
            raise ValueError(f"Unknown correction method: {method}")

        if method == 'none' or not p_values:
            return list(p_values)

        _, corrected, _, _ = multipletests(
            p_values,
            alpha=1 - self.config.confidence_level,
            method=method
        )
        return [float(p) for p in corrected]
