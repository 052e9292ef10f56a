"""SpecForge - specification intelligence core package."""

# No imports at package level to avoid circular import issues
# Import modules directly where needed

__version__ = "1.0.0"

__all__ = [
    "DriftEngine",
    "AlignmentEngine",
    "FeatureIntelligenceService",
    "GovernanceService",
    "ImportService",
    "RefinementOrchestrator",
    "McpHandlers",
    "McpRouter",
    "Repository",
]
