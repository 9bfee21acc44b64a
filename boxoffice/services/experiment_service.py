"""A/B experiments: sticky variant assignment, conversions and significance."""
from __future__ import annotations

import logging
import math
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from boxoffice.database import ensure_utc, utcnow
from boxoffice.models import (
    Experiment,
    ExperimentAssignment,
    ExperimentStatus,
    ExperimentVariant,
)
from boxoffice.observability import increment_counter

SIGNIFICANCE_PROBABILITY = 0.95
TARGETING_OPERATORS = ("equals", "contains", "starts_with", "ends_with", "in", "not_in", "matches")


class ExperimentError(Exception):
    """Raised when a visitor cannot be placed into an experiment."""


def string_hash(value: str) -> int:
    """32-bit ``h * 31 + c`` string hash, returned as its absolute value."""
    result = 0
    for char in value:
        result = ((result << 5) - result + ord(char)) & 0xFFFFFFFF
    if result & 0x80000000:
        result -= 1 << 32
    return abs(result)


def select_variant(variants: List[ExperimentVariant], visitor_id: str, experiment_id: Any) -> ExperimentVariant:
    bucket = (string_hash(f"{experiment_id}:{visitor_id}") % 10000) / 100
    cumulative = 0
    for variant in variants:
        cumulative += variant.weight
        if bucket < cumulative:
            return variant
    return variants[-1]


def in_traffic(experiment: Experiment, visitor_id: str) -> bool:
    return string_hash(f"traffic:{experiment.experimentID}:{visitor_id}") % 100 < experiment.traffic_percentage


def _rule_matches(rule: Dict[str, Any], attributes: Dict[str, Any]) -> bool:
    actual = attributes.get(rule.get("attribute") or rule.get("type"))
    expected = rule.get("value")
    operator = rule.get("operator")
    text = "" if actual is None else str(actual)
    if operator == "equals":
        return actual == expected
    if operator == "contains":
        return str(expected) in text
    if operator == "starts_with":
        return text.startswith(str(expected))
    if operator == "ends_with":
        return text.endswith(str(expected))
    if operator == "in":
        return isinstance(expected, (list, tuple)) and actual in expected
    if operator == "not_in":
        return isinstance(expected, (list, tuple)) and actual not in expected
    if operator == "matches":
        try:
            return re.search(str(expected), text) is not None
        except re.error:
            return False
    return False


def evaluate_targeting(rules: List[Dict[str, Any]], attributes: Optional[Dict[str, Any]], logic: str = "and") -> bool:
    """Rules may override the experiment-wide and/or logic individually.

    An "and" rule that fails rejects the visitor; an "or" rule that matches
    accepts them. A visitor no rule has rejected is accepted.
    """
    if not rules:
        return True
    attributes = attributes or {}
    for rule in rules:
        matches = _rule_matches(rule, attributes)
        if (rule.get("logic") or logic) == "or":
            if matches:
                return True
        elif not matches:
            return False
    return True


def compare_to_control(control_conv: int, control_visitors: int, conv: int, visitors: int) -> Dict[str, float]:
    control_rate = control_conv / control_visitors if control_visitors else 0.0
    rate = conv / visitors if visitors else 0.0
    improvement = (rate - control_rate) / control_rate * 100 if control_rate > 0 else 0.0

    total_visitors = control_visitors + visitors
    pooled = (control_conv + conv) / total_visitors if total_visitors else 0.0
    se = 0.0
    if control_visitors and visitors:
        se = math.sqrt(pooled * (1 - pooled) * (1 / control_visitors + 1 / visitors))
    z = (rate - control_rate) / se if se > 0 else 0.0
    p_value = 1 - 0.5 * (1 + math.tanh(z * 0.7978845608))
    confidence = (1 - p_value) * 100
    return {
        "improvement": round(improvement, 2),
        "confidence": round(confidence, 2),
        "significant": confidence >= SIGNIFICANCE_PROBABILITY * 100,
    }


class ExperimentService:
    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def list_experiments(self, promoter_id: Optional[int] = None) -> List[Experiment]:
        query = self.db.query(Experiment)
        if promoter_id is not None:
            query = query.filter(Experiment.promoterID == promoter_id)
        return query.order_by(Experiment.created_at.desc()).all()

    def get_experiment(self, experiment_id: int) -> Optional[Experiment]:
        return self.db.get(Experiment, experiment_id)

    def create_experiment(self, promoter_id: Optional[int], data: Dict[str, Any]) -> Tuple[bool, str, Optional[Experiment]]:
        name = (data.get("name") or "").strip()
        variants = data.get("variants") or []
        if not name:
            return False, "Experiment name is required", None
        if len(variants) < 2:
            return False, "An experiment needs at least two variants", None
        try:
            weights = [int(variant.get("weight", 0)) for variant in variants]
            traffic = int(data.get("trafficPercentage", 100))
            min_sample = int(data.get("minSampleSize", 100))
        except (TypeError, ValueError):
            return False, "Weights, traffic and sample size must be whole numbers", None
        if sum(weights) != 100:
            return False, "Variant weights must sum to 100", None
        if sum(1 for variant in variants if variant.get("isControl")) != 1:
            return False, "Exactly one variant must be the control", None
        if not 0 <= traffic <= 100:
            return False, "Traffic percentage must be between 0 and 100", None

        targeting = data.get("targeting") or {}
        rules = list(targeting.get("rules") or [])
        for rule in rules:
            if rule.get("operator") not in TARGETING_OPERATORS:
                return False, f"Unsupported targeting operator: {rule.get('operator')}", None

        experiment = Experiment(
            promoterID=promoter_id,
            name=name,
            description=data.get("description"),
            hypothesis=data.get("hypothesis"),
            status=ExperimentStatus.DRAFT,
            traffic_percentage=traffic,
            targeting_logic="or" if targeting.get("logic") == "or" else "and",
            targeting_rules=rules,
            primary_metric=data.get("primaryMetric") or "conversion",
            min_sample_size=min_sample,
        )
        for variant, weight in zip(variants, weights):
            experiment.variants.append(
                ExperimentVariant(
                    name=variant.get("name") or "Variant",
                    weight=weight,
                    is_control=bool(variant.get("isControl")),
                    config=variant.get("config") or {},
                )
            )
        self.db.add(experiment)
        self.db.commit()
        self.logger.info("Experiment created", extra={"experiment_id": experiment.experimentID})
        return True, "Experiment created", experiment

    def _transition(self, experiment_id: int, status: ExperimentStatus, now: Optional[datetime] = None):
        experiment = self.get_experiment(experiment_id)
        if experiment is None:
            return False, "Experiment not found", None
        try:
            experiment.transition_to(status)
        except ValueError as exc:
            return False, str(exc), experiment
        now = now or utcnow()
        if status == ExperimentStatus.RUNNING and experiment.started_at is None:
            experiment.started_at = now
        if status == ExperimentStatus.COMPLETED:
            experiment.ended_at = now
        self.db.commit()
        return True, f"Experiment {status.value}", experiment

    def start(self, experiment_id: int, now: Optional[datetime] = None):
        return self._transition(experiment_id, ExperimentStatus.RUNNING, now)

    def pause(self, experiment_id: int):
        return self._transition(experiment_id, ExperimentStatus.PAUSED)

    def complete(self, experiment_id: int, now: Optional[datetime] = None):
        return self._transition(experiment_id, ExperimentStatus.COMPLETED, now)

    def archive(self, experiment_id: int):
        return self._transition(experiment_id, ExperimentStatus.ARCHIVED)

    def _assignment(self, experiment_id: int, visitor_id: str) -> Optional[ExperimentAssignment]:
        return (
            self.db.query(ExperimentAssignment)
            .filter_by(experimentID=experiment_id, visitor_id=visitor_id)
            .first()
        )

    def assign_variant(self, experiment_id: int, visitor_id: str, attributes: Optional[Dict[str, Any]] = None) -> ExperimentVariant:
        experiment = self.get_experiment(experiment_id)
        if experiment is None:
            raise ExperimentError("Experiment not found")

        existing = self._assignment(experiment_id, visitor_id)
        if existing is not None:
            return existing.variant

        if ExperimentStatus(experiment.status) != ExperimentStatus.RUNNING:
            raise ExperimentError("Experiment is not running")
        if not evaluate_targeting(experiment.targeting_rules or [], attributes, experiment.targeting_logic):
            raise ExperimentError("Visitor does not match targeting criteria")
        if not in_traffic(experiment, visitor_id):
            raise ExperimentError("Visitor not included in experiment traffic")

        variant = select_variant(experiment.variants, visitor_id, experiment.experimentID)
        self.db.add(
            ExperimentAssignment(experimentID=experiment.experimentID, variantID=variant.variantID, visitor_id=visitor_id)
        )
        variant.visitors += 1
        self.db.commit()
        increment_counter("experiment_assignments_total", labels={"experiment": str(experiment.experimentID)})
        return variant

    def record_conversion(self, experiment_id: int, visitor_id: str, revenue: float = 0) -> Tuple[bool, str, Optional[ExperimentAssignment]]:
        assignment = self._assignment(experiment_id, visitor_id)
        if assignment is None:
            return False, "Visitor is not assigned to this experiment", None
        if assignment.converted:
            return True, "Conversion already recorded", assignment
        assignment.converted = True
        assignment.converted_at = utcnow()
        assignment.revenue = round(float(revenue or 0), 2)
        variant = assignment.variant
        variant.conversions += 1
        variant.revenue = round(float(variant.revenue or 0) + float(revenue or 0), 2)
        self.db.commit()
        return True, "Conversion recorded", assignment

    def calculate_results(self, experiment_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        experiment = self.get_experiment(experiment_id)
        if experiment is None:
            raise ExperimentError("Experiment not found")
        control = experiment.control
        if control is None:
            raise ExperimentError("No control variant found")

        analysis = []
        winner: Optional[ExperimentVariant] = None
        highest = 0.0
        sample_size = 0
        for variant in experiment.variants:
            sample_size += variant.visitors
            stats = compare_to_control(control.conversions, control.visitors, variant.conversions, variant.visitors)
            rate = variant.conversions / variant.visitors * 100 if variant.visitors else 0.0
            margin = 1.96 * math.sqrt(rate * (100 - rate) / max(variant.visitors, 1))
            probability = 0.0 if variant.is_control else stats["confidence"] / 100
            if not variant.is_control and probability > highest:
                highest = probability
                winner = variant
            analysis.append(
                {
                    "variantId": variant.variantID,
                    "variantName": variant.name,
                    "conversionRate": round(rate, 2),
                    "conversionRateCI": [max(0.0, round(rate - margin, 2)), min(100.0, round(rate + margin, 2))],
                    "improvement": 0.0 if variant.is_control else stats["improvement"],
                    "probability": round(probability, 2),
                    "revenue": float(variant.revenue or 0),
                }
            )

        significant = winner is not None and highest >= SIGNIFICANCE_PROBABILITY
        if significant:
            improvement = next(item["improvement"] for item in analysis if item["variantId"] == winner.variantID)
            summary = f"{winner.name} is the winner with {improvement}% improvement"
            action = f"Implement {winner.name} as the new default"
        elif sample_size < experiment.min_sample_size:
            summary = f"Experiment needs more data ({sample_size}/{experiment.min_sample_size} visitors)"
            action = "Continue running the experiment"
        else:
            summary = "No statistically significant winner yet"
            action = "Consider extending the experiment or accepting the control"

        now = now or utcnow()
        runtime_hours = 0.0
        if experiment.started_at is not None:
            end = ensure_utc(experiment.ended_at) if experiment.ended_at else now
            runtime_hours = round((end - ensure_utc(experiment.started_at)).total_seconds() / 3600, 2)

        return {
            "winner": winner.variantID if significant else None,
            "confidence": round(highest * 100),
            "statisticalSignificance": significant,
            "sampleSize": sample_size,
            "runtimeHours": runtime_hours,
            "analysis": analysis,
            "summary": summary,
            "recommendedAction": action,
        }
