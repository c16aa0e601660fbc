import asyncio

import pytest

from codemend.calibration.calibrator import ConfidenceCalibrator, expected_calibration_error, reliability_label
from codemend.config.calibration import CalibrationConfig
from codemend.core.errors import ValidationError
from codemend.models.calibration import CalibrationContext
from codemend.storage.memory import InMemoryOutcomeHistory

LLM_BUGS = CalibrationContext(method="llm", domain="bug")


def make_calibrator(prior_strength=10.0):
    return ConfidenceCalibrator(InMemoryOutcomeHistory(), CalibrationConfig(prior_strength=prior_strength))


async def _record(calibrator, outcomes, predicted=0.9, context=LLM_BUGS):
    for i, success in enumerate(outcomes):
        await calibrator.record_outcome(f"fix-{i}", predicted, success, context)


def test_no_history_passes_raw_confidence_through():
    calibrator = make_calibrator()
    result = asyncio.run(calibrator.calibrate_detailed(0.73, LLM_BUGS))
    assert result.calibrated == 0.73
    assert result.sample_count == 0
    assert result.interval.margin == 0.1
    assert result.reliability == "low"


def test_history_pulls_confidence_toward_observed_rate():
    calibrator = make_calibrator(prior_strength=10.0)

    async def scenario():
        await _record(calibrator, [False] * 10)
        return await calibrator.calibrate_detailed(0.9, LLM_BUGS)

    result = asyncio.run(scenario())
    # w = 10 / (10 + 10) = 0.5
    assert result.blend_weight == pytest.approx(0.5)
    assert result.calibrated == pytest.approx(0.45)
    assert result.bucket == "llm/bug"


def test_calibration_is_monotone_in_raw_confidence():
    calibrator = make_calibrator()

    async def scenario():
        await _record(calibrator, [True, False, True, True, False, True])
        return [await calibrator.calibrate(raw / 10, LLM_BUGS) for raw in range(11)]

    values = asyncio.run(scenario())
    assert values == sorted(values)
    assert all(0.0 <= v <= 1.0 for v in values)


def test_falls_back_to_method_bucket():
    calibrator = make_calibrator()

    async def scenario():
        await _record(calibrator, [True] * 5)
        return await calibrator.calibrate_detailed(0.5, CalibrationContext(method="llm", domain="style"))

    result = asyncio.run(scenario())
    assert result.bucket == "llm/*"
    assert result.sample_count == 5
    assert result.calibrated > 0.5


def test_out_of_range_inputs_are_rejected():
    calibrator = make_calibrator()
    with pytest.raises(ValidationError):
        asyncio.run(calibrator.calibrate(1.5))
    with pytest.raises(ValidationError):
        asyncio.run(calibrator.record_outcome("fix-1", -0.1, True))


def test_report_summarizes_outcomes():
    calibrator = make_calibrator()

    async def scenario():
        await _record(calibrator, [True, False, False, False], predicted=0.8)
        return await calibrator.get_calibration_report(method="llm", domain="bug")

    report = asyncio.run(scenario())
    assert report.sample_count == 4
    assert report.mean_predicted == pytest.approx(0.8)
    assert report.mean_actual == pytest.approx(0.25)
    assert report.bias == pytest.approx(0.55)
    assert report.calibration_error == pytest.approx(0.55)
    assert report.mean_absolute_error == pytest.approx((0.2 + 0.8 * 3) / 4)
    assert any("over-confident" in r for r in report.recommendations)
    assert any("more data" in r for r in report.recommendations)


def test_coin_flip_outcomes_at_half_confidence_are_calibrated():
    calibrator = make_calibrator()

    async def scenario():
        await _record(calibrator, [True, False] * 10, predicted=0.5)
        return await calibrator.get_calibration_report()

    report = asyncio.run(scenario())
    assert report.sample_count == 20
    assert report.calibration_error == pytest.approx(0.0)
    assert report.mean_absolute_error == pytest.approx(0.5)
    assert report.bias == pytest.approx(0.0)


def test_empty_report():
    report = asyncio.run(make_calibrator().get_calibration_report())
    assert report.sample_count == 0
    assert report.recommendations


def test_reliability_labels():
    assert reliability_label(10, 0.0) == "low"
    assert reliability_label(60, 0.08) == "medium"
    assert reliability_label(200, 0.01) == "high"
    assert expected_calibration_error([]) == (0.0, {})
