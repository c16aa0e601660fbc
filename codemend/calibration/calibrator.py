"""Confidence calibration from recorded fix outcomes.

Records are bucketed by (method, domain). A raw score is blended with the
empirical success rate of the nearest bucket that has history::

    w = n / (n + prior_strength)
    calibrated = (1 - w) * raw + w * success_rate

so sparse history trusts the raw score and large history trusts the
outcomes. For a fixed bucket the mapping is monotone in ``raw``. With no
history anywhere nearby the raw score passes through unchanged.
"""
from __future__ import annotations

import math
from typing import Dict, List, Optional, Tuple

import structlog

from codemend.config.calibration import CalibrationConfig
from codemend.core.errors import ValidationError
from codemend.models.calibration import (
    ANY,
    BandCalibration,
    CalibrationContext,
    CalibrationRecord,
    CalibrationReport,
    CalibrationResult,
    ConfidenceInterval,
)
from codemend.storage.interfaces import OutcomeHistory

logger = structlog.get_logger(__name__)

BANDS: List[Tuple[str, float, float]] = [
    ("0.0-0.2", 0.0, 0.2),
    ("0.2-0.4", 0.2, 0.4),
    ("0.4-0.6", 0.4, 0.6),
    ("0.6-0.8", 0.6, 0.8),
    ("0.8-1.0", 0.8, 1.0001),
]


def _band_for(value: float) -> str:
    for name, low, high in BANDS:
        if low <= value < high:
            return name
    return BANDS[-1][0]


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def expected_calibration_error(records: List[CalibrationRecord]) -> Tuple[float, Dict[str, BandCalibration]]:
    grouped: Dict[str, List[CalibrationRecord]] = {}
    for record in records:
        grouped.setdefault(_band_for(record.predicted), []).append(record)

    bands: Dict[str, BandCalibration] = {}
    ece = 0.0
    for name, _, _ in BANDS:
        members = grouped.get(name, [])
        if not members:
            continue
        mean_predicted = _mean([r.predicted for r in members])
        mean_actual = _mean([1.0 if r.actual else 0.0 for r in members])
        bands[name] = BandCalibration(count=len(members), mean_predicted=mean_predicted, mean_actual=mean_actual)
        ece += len(members) / len(records) * abs(mean_predicted - mean_actual)
    return ece, bands


def reliability_label(sample_count: int, ece: float) -> str:
    if sample_count >= 100 and ece < 0.05:
        return "high"
    if sample_count >= 50 and ece < 0.1:
        return "medium"
    return "low"


class ConfidenceCalibrator:
    def __init__(self, history: OutcomeHistory, config: Optional[CalibrationConfig] = None):
        self.history = history
        self.config = config or CalibrationConfig.default()

    async def _nearest_bucket(self, context: CalibrationContext) -> Tuple[str, List[CalibrationRecord]]:
        limit = self.config.max_records_per_bucket
        candidates = [
            (context.method, context.domain),
            (context.method, None),
            (None, context.domain),
        ]
        for method, domain in candidates:
            records = await self.history.records(method=method, domain=domain, limit=limit)
            if records:
                return f"{method or ANY}/{domain or ANY}", records
        return "none", []

    def _interval(self, calibrated: float, sample_count: int) -> ConfidenceInterval:
        if sample_count < 10:
            margin = 0.1
        else:
            margin = self.config.confidence_level_z * math.sqrt(calibrated * (1 - calibrated) / sample_count)
        return ConfidenceInterval(
            lower=max(0.0, calibrated - margin),
            upper=min(1.0, calibrated + margin),
            margin=margin,
        )

    async def calibrate_detailed(self, raw_confidence: float, context: Optional[CalibrationContext] = None) -> CalibrationResult:
        if not 0.0 <= raw_confidence <= 1.0:
            raise ValidationError(f"Confidence must be within [0, 1], got {raw_confidence}")
        context = context or CalibrationContext()

        bucket, records = await self._nearest_bucket(context)
        n = len(records)
        if n == 0:
            return CalibrationResult(
                original=raw_confidence,
                calibrated=raw_confidence,
                sample_count=0,
                bucket=bucket,
                blend_weight=0.0,
                interval=self._interval(raw_confidence, 0),
                reliability="low",
            )

        success_rate = sum(1 for r in records if r.actual) / n
        weight = n / (n + self.config.prior_strength)
        calibrated = min(1.0, max(0.0, (1 - weight) * raw_confidence + weight * success_rate))
        ece, _ = expected_calibration_error(records)

        logger.debug(
            "confidence_calibrated",
            bucket=bucket,
            raw=raw_confidence,
            calibrated=calibrated,
            samples=n,
        )
        return CalibrationResult(
            original=raw_confidence,
            calibrated=calibrated,
            sample_count=n,
            bucket=bucket,
            blend_weight=weight,
            interval=self._interval(calibrated, n),
            reliability=reliability_label(n, ece),
        )

    async def calibrate(self, raw_confidence: float, context: Optional[CalibrationContext] = None) -> float:
        result = await self.calibrate_detailed(raw_confidence, context)
        return result.calibrated

    async def record_outcome(
        self,
        fix_id: str,
        predicted: float,
        actual_success: bool,
        context: Optional[CalibrationContext] = None,
    ) -> CalibrationRecord:
        if not 0.0 <= predicted <= 1.0:
            raise ValidationError(f"Predicted confidence must be within [0, 1], got {predicted}")
        context = context or CalibrationContext()
        record = CalibrationRecord(
            fix_id=fix_id,
            method=context.method,
            domain=context.domain,
            predicted=predicted,
            actual=actual_success,
        )
        await self.history.append(record)
        logger.info(
            "calibration_outcome_recorded",
            fix_id=fix_id,
            method=record.method,
            domain=record.domain,
            predicted=predicted,
            actual=actual_success,
        )
        return record

    async def get_calibration_report(self, method: Optional[str] = None, domain: Optional[str] = None) -> CalibrationReport:
        records = await self.history.records(method=method, domain=domain)
        n = len(records)
        if n == 0:
            return CalibrationReport(
                method=method,
                domain=domain,
                recommendations=["No outcomes recorded yet; raw confidence is used unchanged."],
            )

        mean_predicted = _mean([r.predicted for r in records])
        mean_actual = _mean([1.0 if r.actual else 0.0 for r in records])
        mean_absolute_error = _mean([abs(r.predicted - (1.0 if r.actual else 0.0)) for r in records])
        ece, bands = expected_calibration_error(records)
        bias = mean_predicted - mean_actual

        return CalibrationReport(
            method=method,
            domain=domain,
            sample_count=n,
            mean_predicted=mean_predicted,
            mean_actual=mean_actual,
            calibration_error=abs(bias),
            mean_absolute_error=mean_absolute_error,
            expected_calibration_error=ece,
            bias=bias,
            reliability=reliability_label(n, ece),
            bands=bands,
            recommendations=self._recommendations(n, ece, bias),
        )

    @staticmethod
    def _recommendations(sample_count: int, ece: float, bias: float) -> List[str]:
        recommendations = []
        if sample_count < 50:
            recommendations.append(
                f"Need more data for reliable calibration (currently {sample_count} samples)"
            )
        if bias > 0.1:
            recommendations.append("Fixes are over-confident: predicted success exceeds observed success.")
        elif bias < -0.1:
            recommendations.append("Fixes are under-confident: observed success exceeds predicted success.")
        if ece > 0.1:
            recommendations.append("Calibration error is high. Consider reviewing confidence calculation logic.")
        else:
            recommendations.append("Confidence scores are well-calibrated.")
        return recommendations
