import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Any, Tuple

from statistical_engine import (
    CORRECTION_METHODS,
    InvalidSampleError,
    SampleSummary,
    SignificanceResult,
    StatisticalEngine,
    ZeroVarianceError,
    finite_or_none,
)


logger = logging.getLogger(__name__)


class RecommendationAction(Enum):
    SCALE_WINNER = "scale_winner"
    CONTINUE_TEST = "continue_test"
    END_TEST_NO_WINNER = "end_test_no_winner"


@dataclass(frozen=True)
class VariationPerformance:
    variation_id: str
    name: str
    summary: SampleSummary


@dataclass
class VariationComparison:
    variation_id: str
    name: str
    score: float
    sample_size: int
    lift_over_control: Optional[float]
    statistics: Optional[SignificanceResult] = None
    error: Optional[str] = None


@dataclass
class WinnerMetrics:
    variation_id: str
    name: str
    score: float
    lift_over_control: float
    absolute_improvement: float
    statistics: SignificanceResult
    statistical_power: float


@dataclass
class Recommendation:
    action: RecommendationAction
    message: str
    confidence: Optional[float] = None
    expected_impact: Optional[float] = None
    required_samples: Optional[int] = None
    next_steps: Optional[str] = None


@dataclass
class WinnerDetermination:
    has_winner: bool
    winner: Optional[WinnerMetrics]
    control_score: float
    control_sample_size: int
    variations: List[VariationComparison]
    recommendation: Recommendation
    correction_method: str = 'none'
    skipped: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        winner = None
        if self.winner:
            winner = {
                'variation_id': self.winner.variation_id,
                'name': self.winner.name,
                'score': self.winner.score,
                'lift_over_control': self.winner.lift_over_control,
                'absolute_improvement': self.winner.absolute_improvement,
                'statistics': self.winner.statistics.to_dict(),
                'statistical_power': finite_or_none(self.winner.statistical_power)
            }

        return {
            'has_winner': self.has_winner,
            'winner': winner,
            'control': {
                'score': self.control_score,
                'sample_size': self.control_sample_size
            },
            'variations': [
                {
                    'id': v.variation_id,
                    'name': v.name,
                    'score': v.score,
                    'sample_size': v.sample_size,
                    'lift_over_control': v.lift_over_control,
                    'statistics': v.statistics.to_dict() if v.statistics else None,
                    'error': v.error
                }
                for v in self.variations
            ],
            'recommendation': {
                'action': self.recommendation.action.value,
                'message': self.recommendation.message,
                'confidence': self.recommendation.confidence,
                'expected_impact': self.recommendation.expected_impact,
                'required_samples': self.recommendation.required_samples,
                'next_steps': self.recommendation.next_steps
            },
            'correction_method': self.correction_method
        }


class WinnerValidationSystem:
    """Compares every variation against control and picks a significant winner"""

    def __init__(
        self,
        engine: Optional[StatisticalEngine] = None,
        min_sample_size: int = 100,
        min_detectable_effect: float = 0.05,
        control_id: str = 'control',
        correction_method: str = 'none'
    ):
        if correction_method not in CORRECTION_METHODS:
            raise ValueError(f"Unknown correction method: {correction_method}")

        self.engine = engine or StatisticalEngine()
        self.min_sample_size = min_sample_size
        self.min_detectable_effect = min_detectable_effect
        self.control_id = control_id
        self.correction_method = correction_method

    def determine_winner(self, variations: List[VariationPerformance]) -> WinnerDetermination:
        """
        Determine the winning variation of a test.

        A variation qualifies when its difference from control is significant and its
        relative lift exceeds the minimum detectable effect; among qualifying variations
        the one with the highest mean wins.

        Args:
            variations: Performance of every variation, control included

        Returns:
            WinnerDetermination with per-variation statistics and a recommendation
        """
        control = self._find_control(variations)
        treatments = [v for v in variations if v.variation_id != self.control_id]
        if not treatments:
            raise ValueError("Test must have at least one variation besides control")

        statistics, skipped = self._compare_all(control, treatments)

        comparisons = []
        best: Optional[VariationPerformance] = None

        # Report variations in input order
        for variation in variations:
            if variation.variation_id == self.control_id:
                comparisons.append(self._control_comparison(control))
                continue

            lift = self._relative_lift(control.summary.mean, variation.summary.mean)
            result = statistics.get(variation.variation_id)

            comparisons.append(VariationComparison(
                variation_id=variation.variation_id,
                name=variation.name,
                score=variation.summary.mean,
                sample_size=variation.summary.sample_size,
                lift_over_control=lift * 100 if lift is not None else None,
                statistics=result,
                error=skipped.get(variation.variation_id)
            ))

            if result is None or not result.is_significant:
                continue
            if lift is None or lift <= self.min_detectable_effect:
                continue
            if best is None or variation.summary.mean > best.summary.mean:
                best = variation

        winner = self._winner_metrics(control, best, statistics) if best else None
        recommendation = self._generate_recommendation(winner, variations)

        return WinnerDetermination(
            has_winner=winner is not None,
            winner=winner,
            control_score=control.summary.mean,
            control_sample_size=control.summary.sample_size,
            variations=comparisons,
            recommendation=recommendation,
            correction_method=self.correction_method,
            skipped=skipped
        )

    def _find_control(self, variations: List[VariationPerformance]) -> VariationPerformance:
        for variation in variations:
            if variation.variation_id == self.control_id:
                return variation
        raise ValueError(f"Control variation '{self.control_id}' not found")

    def _compare_all(
        self,
        control: VariationPerformance,
        treatments: List[VariationPerformance]
    ) -> Tuple[Dict[str, SignificanceResult], Dict[str, str]]:
        """Run each comparison, then correct p-values across the family if configured"""
        statistics: Dict[str, SignificanceResult] = {}
        skipped: Dict[str, str] = {}

        for variation in treatments:
            try:
                statistics[variation.variation_id] = self.engine.compute_significance(
                    control.summary, variation.summary
                )
            except (InvalidSampleError, ZeroVarianceError) as e:
                logger.warning("Skipping variation %s: %s", variation.variation_id, e)
                skipped[variation.variation_id] = str(e)

        if self.correction_method != 'none' and statistics:
            ids = list(statistics)
            corrected = self.engine.correct_multiple_comparisons(
                [statistics[i].p_value for i in ids], method=self.correction_method
            )
            alpha = 1 - self.engine.config.confidence_level
            for variation_id, p_value in zip(ids, corrected):
                statistics[variation_id] = replace(
                    statistics[variation_id],
                    p_value=p_value,
                    is_significant=p_value < alpha,
                    confidence=1 - p_value
                )

        return statistics, skipped

    def _control_comparison(self, control: VariationPerformance) -> VariationComparison:
        return VariationComparison(
            variation_id=control.variation_id,
            name=control.name,
            score=control.summary.mean,
            sample_size=control.summary.sample_size,
            lift_over_control=0.0 if control.summary.mean != 0 else None
        )

    def _relative_lift(self, control_mean: float, variation_mean: float) -> Optional[float]:
        if control_mean == 0:
            return None
        return (variation_mean - control_mean) / control_mean

    def _winner_metrics(
        self,
        control: VariationPerformance,
        best: VariationPerformance,
        statistics: Dict[str, SignificanceResult]
    ) -> WinnerMetrics:
        result = statistics[best.variation_id]
        absolute_improvement = best.summary.mean - control.summary.mean

        power = self.engine.calculate_statistical_power(
            effect_size=result.effect_size,
            control_size=control.summary.sample_size,
            treatment_size=best.summary.sample_size
        )

        return WinnerMetrics(
            variation_id=best.variation_id,
            name=best.name,
            score=best.summary.mean,
            lift_over_control=absolute_improvement / control.summary.mean * 100,
            absolute_improvement=absolute_improvement,
            statistics=result,
            statistical_power=power
        )

    def _generate_recommendation(
        self,
        winner: Optional[WinnerMetrics],
        variations: List[VariationPerformance]
    ) -> Recommendation:
        """Generate actionable recommendation based on results"""
        if winner:
            return Recommendation(
                action=RecommendationAction.SCALE_WINNER,
                message=f'Scale winning variation "{winner.name}" to all pages',
                confidence=winner.statistics.confidence,
                expected_impact=winner.absolute_improvement
            )

        sample_sizes = [v.summary.sample_size for v in variations]
        if all(n < self.min_sample_size for n in sample_sizes):
            return Recommendation(
                action=RecommendationAction.CONTINUE_TEST,
                message='Continue test - insufficient sample size for statistical significance',
                required_samples=self.min_sample_size - max(sample_sizes)
            )

        return Recommendation(
            action=RecommendationAction.END_TEST_NO_WINNER,
            message='No variation showed significant improvement. Keep control or try new variations.',
            next_steps='Consider testing more dramatic variations'
        )
