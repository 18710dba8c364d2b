"""Tests for ab_testing/winner_validation_system.py winner selection and recommendations."""

import json
import math

import pytest

from ab_testing.winner_validation_system import (
    RecommendationAction,
    VariationPerformance,
    WinnerValidationSystem,
)
from statistical_engine import (
    SampleSummary,
    SignificanceConfig,
    StatisticalEngine,
    ZeroVariancePolicy,
)


def variation(variation_id, n, mean, std=10.0, name=None):
    return VariationPerformance(
        variation_id=variation_id,
        name=name or variation_id.replace('_', ' ').title(),
        summary=SampleSummary(sample_size=n, mean=mean, std_dev=std)
    )


# ── Winner selection ─────────────────────────────────────────────────


def test_highest_significant_variation_wins():
    system = WinnerValidationSystem()
    determination = system.determine_winner([
        variation('control', 200, 75.0),
        variation('bold_headline', 200, 80.0),
        variation('social_proof', 200, 85.0),
    ])

    assert determination.has_winner
    assert determination.winner.variation_id == 'social_proof'
    assert determination.winner.absolute_improvement == pytest.approx(10.0)
    assert determination.winner.lift_over_control == pytest.approx(10 / 75 * 100)
    assert determination.winner.statistics.degrees_of_freedom == 398
    assert determination.winner.statistical_power > 0.99

    recommendation = determination.recommendation
    assert recommendation.action == RecommendationAction.SCALE_WINNER
    assert 'Social Proof' in recommendation.message
    assert recommendation.expected_impact == pytest.approx(10.0)
    assert recommendation.confidence == pytest.approx(1 - determination.winner.statistics.p_value)


def test_variations_reported_in_input_order():
    determination = WinnerValidationSystem().determine_winner([
        variation('bold_headline', 200, 80.0),
        variation('control', 200, 75.0),
        variation('social_proof', 200, 77.0),
    ])

    ids = [v.variation_id for v in determination.variations]
    assert ids == ['bold_headline', 'control', 'social_proof']
    assert determination.variations[1].lift_over_control == 0.0
    assert determination.variations[1].statistics is None
    assert determination.variations[0].lift_over_control == pytest.approx(5 / 75 * 100)
    assert determination.control_sample_size == 200


def test_significant_lift_below_minimum_effect_is_not_a_winner():
    determination = WinnerValidationSystem(min_detectable_effect=0.05).determine_winner([
        variation('control', 2000, 75.0),
        variation('subtle_cta', 2000, 77.0),
    ])

    assert determination.variations[1].statistics.is_significant
    assert not determination.has_winner
    assert determination.recommendation.action == RecommendationAction.END_TEST_NO_WINNER
    assert determination.recommendation.next_steps


def test_worse_variation_never_wins():
    determination = WinnerValidationSystem().determine_winner([
        variation('control', 500, 75.0),
        variation('dark_pattern', 500, 60.0),
    ])

    assert determination.variations[1].statistics.is_significant
    assert determination.winner is None


def test_small_samples_continue_test():
    determination = WinnerValidationSystem(min_sample_size=100).determine_winner([
        variation('control', 50, 75.0),
        variation('hero_image', 40, 76.0),
    ])

    assert not determination.has_winner
    assert determination.recommendation.action == RecommendationAction.CONTINUE_TEST
    assert determination.recommendation.required_samples == 50


# ── Failures ─────────────────────────────────────────────────────────


def test_missing_control():
    with pytest.raises(ValueError, match="Control variation"):
        WinnerValidationSystem().determine_winner([variation('a', 100, 1.0)])


def test_control_only():
    with pytest.raises(ValueError, match="at least one variation"):
        WinnerValidationSystem().determine_winner([variation('control', 100, 1.0)])


def test_custom_control_id():
    system = WinnerValidationSystem(control_id='baseline')
    determination = system.determine_winner([
        variation('baseline', 200, 75.0),
        variation('challenger', 200, 85.0),
    ])
    assert determination.winner.variation_id == 'challenger'


def test_uncomparable_variation_is_skipped():
    determination = WinnerValidationSystem().determine_winner([
        variation('control', 200, 75.0),
        variation('just_launched', 1, 99.0),
        variation('bold_headline', 200, 85.0),
    ])

    assert determination.winner.variation_id == 'bold_headline'
    assert 'just_launched' in determination.skipped

    skipped = determination.variations[1]
    assert skipped.statistics is None
    assert 'at least 2' in skipped.error


def test_unknown_correction_method():
    with pytest.raises(ValueError):
        WinnerValidationSystem(correction_method='magic')


# ── Multiple comparisons ─────────────────────────────────────────────


def test_bonferroni_correction_can_remove_winner():
    variations = [
        variation('control', 100, 75.0),
        variation('variant_a', 100, 78.0),
        variation('variant_b', 100, 78.0),
    ]

    uncorrected = WinnerValidationSystem(min_detectable_effect=0.0).determine_winner(variations)
    corrected = WinnerValidationSystem(
        min_detectable_effect=0.0, correction_method='bonferroni'
    ).determine_winner(variations)

    raw_p = uncorrected.variations[1].statistics.p_value
    assert uncorrected.has_winner
    assert not corrected.has_winner
    assert corrected.variations[1].statistics.p_value == pytest.approx(raw_p * 2)
    assert corrected.correction_method == 'bonferroni'


# ── Serialization ────────────────────────────────────────────────────


def test_to_dict():
    data = WinnerValidationSystem().determine_winner([
        variation('control', 200, 75.0),
        variation('social_proof', 200, 85.0),
    ]).to_dict()

    assert data['has_winner'] is True
    assert data['winner']['variation_id'] == 'social_proof'
    assert data['winner']['statistics']['p_value_method'] == 'exact'
    assert data['control'] == {'score': 75.0, 'sample_size': 200}
    assert data['recommendation']['action'] == 'scale_winner'
    assert [v['id'] for v in data['variations']] == ['control', 'social_proof']
    assert data['winner']['statistical_power'] > 0.99
    json.dumps(data, allow_nan=False)


def test_to_dict_without_spread_is_standard_json():
    engine = StatisticalEngine(SignificanceConfig(zero_variance_policy=ZeroVariancePolicy.SHORT_CIRCUIT))
    determination = WinnerValidationSystem(engine=engine).determine_winner([
        variation('control', 200, 75.0, std=0.0),
        variation('fixed_price', 200, 90.0, std=0.0),
    ])

    assert determination.winner.statistics.t_statistic == math.inf
    assert determination.winner.statistical_power == 1.0

    data = determination.to_dict()
    assert data['winner']['statistics']['t_statistic'] is None
    assert data['winner']['statistics']['effect_size'] is None
    json.dumps(data, allow_nan=False)


@pytest.mark.parametrize("n,mean", [(200, 85.0), (500, 83.0)])
def test_strong_winner_power_is_finite(n, mean):
    determination = WinnerValidationSystem().determine_winner([
        variation('control', n, 75.0),
        variation('social_proof', n, mean),
    ])

    power = determination.winner.statistical_power
    assert math.isfinite(power)
    assert 0.99 < power <= 1.0
