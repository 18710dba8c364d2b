import logging
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Dict, List, Optional, Any, Mapping

import pandas as pd

from statistical_engine import (
    CORRECTION_METHODS,
    PValueMethod,
    SignificanceConfig,
    StatisticalEngine,
    ZeroVariancePolicy,
    summarize_groups,
)
from ab_testing.winner_validation_system import (
    RecommendationAction,
    VariationPerformance,
    WinnerDetermination,
    WinnerValidationSystem,
)


logger = logging.getLogger(__name__)


@dataclass
class AnalysisConfig:
    confidence_level: float = 0.95
    min_sample_size: int = 100
    min_detectable_effect: float = 0.05  # 5% minimum relative improvement
    control_id: str = 'control'
    p_value_method: PValueMethod = PValueMethod.EXACT
    zero_variance_policy: ZeroVariancePolicy = ZeroVariancePolicy.RAISE
    correction_method: str = 'none'

    def __post_init__(self):
        # Accept enum values given as plain strings
        self.p_value_method = PValueMethod(self.p_value_method)
        self.zero_variance_policy = ZeroVariancePolicy(self.zero_variance_policy)

        if self.min_sample_size < 2:
            raise ValueError("Minimum sample size must be at least 2")
        if self.min_detectable_effect < 0:
            raise ValueError("Minimum detectable effect cannot be negative")
        if self.correction_method not in CORRECTION_METHODS:
            raise ValueError(f"Unknown correction method: {self.correction_method}")

        # Validates the confidence level
        self.significance_config()

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> 'AnalysisConfig':
        """Build a config from a plain mapping such as a parsed JSON file"""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**values)

    def significance_config(self) -> SignificanceConfig:
        return SignificanceConfig(
            confidence_level=self.confidence_level,
            p_value_method=self.p_value_method,
            zero_variance_policy=self.zero_variance_policy
        )


@dataclass
class ExperimentResult:
    experiment_id: str
    determination: WinnerDetermination
    analyzed_at: datetime

    @property
    def winner(self) -> Optional[str]:
        if self.determination.winner is None:
            return None
        return self.determination.winner.variation_id

    @property
    def recommendation(self) -> RecommendationAction:
        return self.determination.recommendation.action


class GrowthFramework:
    """Analyzes landing-page tests and keeps the results of every analyzed test"""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or AnalysisConfig()
        self.statistical_engine = StatisticalEngine(self.config.significance_config())
        self.winner_validator = WinnerValidationSystem(
            engine=self.statistical_engine,
            min_sample_size=self.config.min_sample_size,
            min_detectable_effect=self.config.min_detectable_effect,
            control_id=self.config.control_id,
            correction_method=self.config.correction_method
        )
        self.experiment_results: Dict[str, ExperimentResult] = {}

    def analyze_test(
        self,
        experiment_id: str,
        variations: List[VariationPerformance]
    ) -> ExperimentResult:
        """Determine the winner of a test and record the result"""
        determination = self.winner_validator.determine_winner(variations)

        result = ExperimentResult(
            experiment_id=experiment_id,
            determination=determination,
            analyzed_at=datetime.now()
        )
        self.experiment_results[experiment_id] = result

        if determination.has_winner:
            logger.info(
                "Experiment %s: winner %s (lift %.2f%%, p=%.4f)",
                experiment_id,
                determination.winner.variation_id,
                determination.winner.lift_over_control,
                determination.winner.statistics.p_value
            )
        else:
            logger.info(
                "Experiment %s: no winner, recommendation %s",
                experiment_id,
                determination.recommendation.action.value
            )

        return result

    def analyze_dataframe(
        self,
        experiment_id: str,
        data: pd.DataFrame,
        target_metric: str,
        variant_column: str = 'variant',
        names: Optional[Dict[str, str]] = None
    ) -> ExperimentResult:
        """Summarize raw per-visitor observations by variant, then analyze the test"""
        names = names or {}
        summaries = summarize_groups(data, variant_column, target_metric)

        variations = [
            VariationPerformance(
                variation_id=variation_id,
                name=names.get(variation_id, variation_id),
                summary=summary
            )
            for variation_id, summary in summaries.items()
        ]
        return self.analyze_test(experiment_id, variations)

    def get_result(self, experiment_id: str) -> ExperimentResult:
        if experiment_id not in self.experiment_results:
            raise ValueError(f"Experiment {experiment_id} not found")
        return self.experiment_results[experiment_id]

    def get_experiment_portfolio_metrics(self) -> Dict[str, Any]:
        """Get overall experimentation program metrics"""
        analyzed = len(self.experiment_results)
        winners = [
            result.determination.winner
            for result in self.experiment_results.values()
            if result.determination.has_winner
        ]

        win_rate = len(winners) / analyzed if analyzed else 0.0
        average_lift = (
            sum(w.lift_over_control for w in winners) / len(winners) if winners else 0.0
        )

        return {
            'total_experiments': analyzed,
            'experiments_with_winner': len(winners),
            'win_rate': win_rate,
            'average_winning_lift': average_lift
        }
