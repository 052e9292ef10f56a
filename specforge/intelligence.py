"""Feature intelligence scoring and the governance gates built on it."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from .drift_service import DriftService
from .models import FeatureIntelligence, RoadmapItem, utcnow
from .notifications import FEATURE_SCORE_UPDATED, NotificationService
from .specforge_logging import log_error_with_context, log_performance, log_score_update
from .storage import Repository

logger = logging.getLogger("specforge.intelligence")

WEIGHTS: Dict[str, int] = {
    "completeness_score": 20,
    "contract_integrity_score": 20,
    "variable_coverage_score": 15,
    "test_coverage_score": 10,
    "dependency_stability_score": 10,
    "drift_risk_score": 15,
    "llm_confidence_score": 10,
}

BUILD_THRESHOLD = 50
DEPLOY_THRESHOLD = 80


def completeness_score(item: RoadmapItem) -> int:
    score = 0
    if item.description:
        score += 20
    if item.business_context:
        score += 40
    if item.technical_context:
        score += 40
    return score


def overall_score(intel: FeatureIntelligence) -> int:
    """Weighted sum, each term truncated with integer division."""
    return sum(weight * getattr(intel, name) // 100 for name, weight in WEIGHTS.items())


class FeatureIntelligenceService:
    def __init__(self, repository: Repository, drift_service: Optional[DriftService] = None,
                 notifications: Optional[NotificationService] = None):
        self.repository = repository
        self.drift_service = drift_service
        self.notifications = notifications

    def get_feature_score(self, roadmap_item_id: str) -> Optional[FeatureIntelligence]:
        return self.repository.get_feature_intelligence(roadmap_item_id)

    @log_performance("calculate_feature_score")
    def calculate_feature_score(self, roadmap_item_id: str) -> FeatureIntelligence:
        repo = self.repository
        item = repo.require(RoadmapItem, roadmap_item_id)
        contracts = repo.list_contracts(roadmap_item_id)
        variable_count = sum(len(repo.list_variables(c.id)) for c in contracts)
        requirements = repo.list_requirements(roadmap_item_id)

        intel = FeatureIntelligence(roadmap_item_id=roadmap_item_id)
        intel.completeness_score = completeness_score(item)
        intel.contract_integrity_score = 100 if contracts else 0
        # no contracts means nothing needs variables
        intel.variable_coverage_score = 100 if variable_count or not contracts else 0
        if requirements:
            testable = sum(1 for r in requirements if r.testable)
            intel.test_coverage_score = testable * 100 // len(requirements)
        intel.drift_risk_score = self._drift_score(roadmap_item_id)
        intel.overall_score = overall_score(intel)
        intel.updated_at = utcnow()
        repo.save(intel)

        log_score_update(roadmap_item_id, intel.overall_score,
                         completeness=intel.completeness_score, drift_risk=intel.drift_risk_score)
        if self.notifications is not None:
            self.notifications.broadcast(FEATURE_SCORE_UPDATED, intel.to_dict())
        return intel

    def _drift_score(self, roadmap_item_id: str) -> int:
        if self.drift_service is None:
            return 100
        try:
            return self.drift_service.get_feature_drift_score(roadmap_item_id)
        except Exception as e:
            log_error_with_context(e, {"operation": "get_feature_drift_score", "roadmap_item_id": roadmap_item_id})
            return 100


class GovernanceService:
    """Admission checks; each returns ``(allowed, reasons)``."""

    def __init__(self, intelligence: FeatureIntelligenceService):
        self.intelligence = intelligence

    def _score(self, roadmap_item_id: str) -> FeatureIntelligence:
        intel = self.intelligence.get_feature_score(roadmap_item_id)
        if intel is None:
            intel = self.intelligence.calculate_feature_score(roadmap_item_id)
        return intel

    def can_build_feature(self, roadmap_item_id: str) -> Tuple[bool, List[str]]:
        intel = self._score(roadmap_item_id)
        reasons = []
        if intel.overall_score < BUILD_THRESHOLD:
            reasons.append(f"Overall Intelligence Score is too low ({intel.overall_score} < {BUILD_THRESHOLD})")
        return not reasons, reasons

    def can_deploy_feature(self, roadmap_item_id: str) -> Tuple[bool, List[str]]:
        intel = self._score(roadmap_item_id)
        reasons = []
        if intel.overall_score < DEPLOY_THRESHOLD:
            reasons.append(
                f"Overall Intelligence Score is too low for deployment ({intel.overall_score} < {DEPLOY_THRESHOLD})"
            )
        if intel.completeness_score < 100:
            reasons.append("Feature Spec must be 100% complete")
        return not reasons, reasons

    def can_update_contract(self, contract_id: str) -> Tuple[bool, List[str]]:
        # Hook for pending-proposal checks; every update is allowed for now.
        return True, []
