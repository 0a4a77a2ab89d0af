"""
Static analysis of the native BLE modules and the JavaScript bridge layer.
"""

from blevalidation.systems.validation.static_analysis.engine import StaticAnalysisEngine

__all__ = ["StaticAnalysisEngine"]
