"""
BLE Validation — Default Engine Wiring

The controller only knows the phase contracts. This module is the one
place that picks the concrete engines and feeds them their slices of
BLEValidationConfig.
"""

from __future__ import annotations

from blevalidation.config import BLEValidationConfig
from blevalidation.systems.validation.categorization import IssueCategorizationEngine
from blevalidation.systems.validation.configuration import ConfigurationAuditEngine
from blevalidation.systems.validation.controller import ValidationController
from blevalidation.systems.validation.database import DatabaseSimulationEngine
from blevalidation.systems.validation.performance import PerformanceAnalysisEngine
from blevalidation.systems.validation.security import SecurityAuditEngine
from blevalidation.systems.validation.static_analysis import StaticAnalysisEngine


def build_default_controller(config: BLEValidationConfig) -> ValidationController:
    """Controller with the five concrete engines wired from one configuration."""
    validation = config.validation
    controller = ValidationController(
        validation,
        categorizer=IssueCategorizationEngine(target_users=config.verdict.target_concurrent_users),
    )

    database = DatabaseSimulationEngine(
        config.sources,
        concurrency=config.concurrency,
        max_concurrent_users=validation.max_concurrent_users,
    )
    controller.register_static_analysis_engine(StaticAnalysisEngine(
        config.sources,
        skip_optional_checks=validation.skip_optional_checks,
    ))
    controller.register_database_simulation_engine(database)
    controller.register_security_audit_engine(SecurityAuditEngine(config.sources))
    controller.register_performance_analysis_engine(PerformanceAnalysisEngine(
        config.performance,
        concurrency=config.concurrency,
        target_users=validation.max_concurrent_users,
        # Performance runs after the database phase and grades its measured load
        measured_metrics=lambda: database.metrics,
    ))
    controller.register_configuration_audit_engine(ConfigurationAuditEngine(config.sources))
    return controller
