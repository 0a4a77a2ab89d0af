"""
BLE Validation — Error Hierarchy

Exceptions raised by the validation pipeline. Findings about the system
under test are never exceptions: they are ValidationResult data.

EngineInitError and EngineTimeoutError are recovered by the controller and
surfaced as a synthetic CRITICAL finding; the run continues. MissingEngineError
is raised to the caller before any phase runs.
"""

from __future__ import annotations


class ValidationFrameworkError(RuntimeError):
    """Base for all validation framework errors."""


class EngineInitError(ValidationFrameworkError):
    """An engine could not acquire its prerequisites (e.g. a missing source path)."""

    def __init__(self, engine_name: str, reason: str) -> None:
        super().__init__(f"{engine_name} initialization failed: {reason}")
        self.engine_name = engine_name
        self.reason = reason


class EngineTimeoutError(ValidationFrameworkError):
    """An engine's validate() did not finish inside the remaining run budget."""

    def __init__(self, phase: str, timeout_ms: int) -> None:
        super().__init__(f"Phase {phase} timed out after {timeout_ms}ms")
        self.phase = phase
        self.timeout_ms = timeout_ms


class MissingEngineError(ValidationFrameworkError):
    """An enabled phase has no registered engine. Fatal."""

    def __init__(self, phases: list[str]) -> None:
        super().__init__(f"No engine registered for enabled phase(s): {', '.join(phases)}")
        self.phases = phases


class ExportError(ValidationFrameworkError):
    """Export requested before a run completed, or in an unknown format."""


class SourceParseError(ValidationFrameworkError):
    """A read-only input file could not be parsed."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Could not parse {path}: {reason}")
        self.path = path
        self.reason = reason
