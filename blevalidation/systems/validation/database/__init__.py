"""
Database function and schema validation, and concurrent load simulation.
"""

from blevalidation.systems.validation.database.backend import SimulatedBackend
from blevalidation.systems.validation.database.concurrency import (
    LoadSimulation,
    SessionCreationSimulation,
    SimulationMetrics,
)
from blevalidation.systems.validation.database.engine import DatabaseSimulationEngine
from blevalidation.systems.validation.database.schema import SchemaModel, parse_schema

__all__ = [
    "DatabaseSimulationEngine",
    "LoadSimulation",
    "SchemaModel",
    "SessionCreationSimulation",
    "SimulatedBackend",
    "SimulationMetrics",
    "parse_schema",
]
