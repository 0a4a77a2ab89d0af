"""
BLE Validation — System Validation Framework

Assesses whether the BLE beacon attendance system is safe to deploy without
physical devices. Five independent engines audit the native modules, the
database functions under simulated concurrent load, security, performance
and configuration; the controller folds their findings into one aggregate,
which is then categorized and turned into a Go/No-Go verdict.
"""

from blevalidation.systems.validation.categorization import IssueCategorizationEngine
from blevalidation.systems.validation.configuration import ConfigurationAuditEngine
from blevalidation.systems.validation.controller import (
    ValidationController,
    generate_execution_id,
)
from blevalidation.systems.validation.database import DatabaseSimulationEngine
from blevalidation.systems.validation.engine import (
    BaseAnalysisEngine,
    ConfigurationAuditContract,
    DatabaseSimulationContract,
    PerformanceAnalysisContract,
    ProgressTracker,
    SecurityAuditContract,
    StaticAnalysisContract,
    ValidationEngine,
)
from blevalidation.systems.validation.errors import (
    EngineInitError,
    EngineTimeoutError,
    ExportError,
    MissingEngineError,
    SourceParseError,
    ValidationFrameworkError,
)
from blevalidation.systems.validation.factory import build_default_controller
from blevalidation.systems.validation.performance import PerformanceAnalysisEngine
from blevalidation.systems.validation.reporting import (
    generate_deployment_checklist,
    generate_executive_summary,
    generate_issue_tracker,
    generate_technical_analysis,
)
from blevalidation.systems.validation.security import SecurityAuditEngine
from blevalidation.systems.validation.serializer import ValidationResultSerializer
from blevalidation.systems.validation.static_analysis import StaticAnalysisEngine
from blevalidation.systems.validation.types import (
    BLESystemValidationResult,
    CategorizedIssue,
    ConfidenceLevel,
    Evidence,
    EvidenceType,
    GoNoGoRecommendation,
    IssueCategorizationResult,
    ProductionReadiness,
    ProductionReadinessVerdictResult,
    Recommendation,
    Severity,
    ValidationCategory,
    ValidationPhaseResult,
    ValidationProgress,
    ValidationResult,
    ValidationStatus,
)
from blevalidation.systems.validation.verdict import ProductionReadinessVerdictEngine

__all__ = [
    # Controller
    "ValidationController",
    "build_default_controller",
    "generate_execution_id",
    # Engines
    "BaseAnalysisEngine",
    "ConfigurationAuditEngine",
    "DatabaseSimulationEngine",
    "PerformanceAnalysisEngine",
    "ProgressTracker",
    "SecurityAuditEngine",
    "StaticAnalysisEngine",
    # Contracts
    "ConfigurationAuditContract",
    "DatabaseSimulationContract",
    "PerformanceAnalysisContract",
    "SecurityAuditContract",
    "StaticAnalysisContract",
    "ValidationEngine",
    # Triage and verdict
    "IssueCategorizationEngine",
    "ProductionReadinessVerdictEngine",
    # Reporting
    "ValidationResultSerializer",
    "generate_deployment_checklist",
    "generate_executive_summary",
    "generate_issue_tracker",
    "generate_technical_analysis",
    # Errors
    "EngineInitError",
    "EngineTimeoutError",
    "ExportError",
    "MissingEngineError",
    "SourceParseError",
    "ValidationFrameworkError",
    # Types
    "BLESystemValidationResult",
    "CategorizedIssue",
    "ConfidenceLevel",
    "Evidence",
    "EvidenceType",
    "GoNoGoRecommendation",
    "IssueCategorizationResult",
    "ProductionReadiness",
    "ProductionReadinessVerdictResult",
    "Recommendation",
    "Severity",
    "ValidationCategory",
    "ValidationPhaseResult",
    "ValidationProgress",
    "ValidationResult",
    "ValidationStatus",
]
