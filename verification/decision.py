"""
Check-in status decision table.

Rules are evaluated top to bottom and the first one that applies decides:

  1. simulation         simulation mode on          → verified  (simulation)
  2. no_connectivity    device offline              → pending   no_connectivity (offline)
  3. manual             recognition disabled        → verified  (manual)
  4. no_gps_data        geofence failed, no GPS fix → pending   no_gps_data (ai_image)
  5. geofence_failed    geofence failed             → pending   geofence_failed (ai_image)
  6. ocr_failed         recognition unsuccessful    → pending   ocr_failed (ai_image)
  7. low_confidence     confidence < 0.70           → pending   low_confidence (ai_image)
  8. accepted           otherwise                   → verified  (ai_image, or gps without recognition)

The last rule always applies, so every input maps to exactly one outcome.
Pending reason codes are persisted and keyed on downstream; do not rename them.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Literal, Optional

from geofence.evaluator import SOURCE_NONE, GeofenceResult

logger = logging.getLogger(__name__)

MIN_RECOGNITION_CONFIDENCE = 0.70

VisitStatus = Literal["verified", "pending"]
PendingReason = Literal["no_connectivity", "geofence_failed", "no_gps_data", "ocr_failed", "low_confidence"]
VerificationMethod = Literal["simulation", "offline", "manual", "ai_image", "gps"]


@dataclass(frozen=True)
class RecognitionResult:
    """Structured output of the external sign recognizer."""
    success: bool
    confidence: float
    raw_text: str = ""
    station_name: Optional[str] = None


@dataclass(frozen=True)
class DecisionInputs:
    simulation_mode: bool = False
    has_connectivity: bool = True
    ai_enabled: bool = True
    geofence: Optional[GeofenceResult] = None
    recognition: Optional[RecognitionResult] = None


@dataclass(frozen=True)
class Decision:
    status: VisitStatus
    pending_reason: Optional[PendingReason]
    verification_method: VerificationMethod
    rule: str


@dataclass(frozen=True)
class Rule:
    name: str
    applies: Callable[[DecisionInputs], bool]
    outcome: Callable[[DecisionInputs], tuple]


def _geofence_failed(i: DecisionInputs) -> bool:
    return i.geofence is not None and not i.geofence.within_radius


RULES: tuple[Rule, ...] = (
    Rule("simulation",
         lambda i: i.simulation_mode,
         lambda i: ("verified", None, "simulation")),
    Rule("no_connectivity",
         lambda i: not i.has_connectivity,
         lambda i: ("pending", "no_connectivity", "offline")),
    Rule("manual",
         lambda i: not i.ai_enabled,
         lambda i: ("verified", None, "manual")),
    Rule("no_gps_data",
         lambda i: _geofence_failed(i) and i.geofence.source == SOURCE_NONE,
         lambda i: ("pending", "no_gps_data", "ai_image")),
    Rule("geofence_failed",
         _geofence_failed,
         lambda i: ("pending", "geofence_failed", "ai_image")),
    Rule("ocr_failed",
         lambda i: i.recognition is not None and not i.recognition.success,
         lambda i: ("pending", "ocr_failed", "ai_image")),
    Rule("low_confidence",
         lambda i: i.recognition is not None and i.recognition.confidence < MIN_RECOGNITION_CONFIDENCE,
         lambda i: ("pending", "low_confidence", "ai_image")),
    Rule("accepted",
         lambda i: True,
         lambda i: ("verified", None, "ai_image" if i.recognition is not None else "gps")),
)


def decide(inputs: DecisionInputs, rules: tuple[Rule, ...] = RULES) -> Decision:
    """Return the verdict of the first applicable rule."""
    for rule in rules:
        if rule.applies(inputs):
            status, reason, method = rule.outcome(inputs)
            logger.debug("Status decision: rule=%s status=%s reason=%s", rule.name, status, reason)
            return Decision(status, reason, method, rule.name)
    raise RuntimeError("No decision rule applied; the rule list must end with a catch-all.")
