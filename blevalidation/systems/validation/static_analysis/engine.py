"""
BLE Validation — Static Analysis Engine

Audits the native iOS/Android beacon modules and the JavaScript bridge
layer from source. The source trees are read-only input; nothing is
compiled or executed.

Four steps, in order:
  1. analyze_native_modules  CoreBluetooth / android.bluetooth.le usage
  2. analyze_bridge_layer    listener cleanup, permissions, token hygiene
  3. analyze_code_quality    file size, TODO markers, untyped values
  4. validate_interfaces     bridge calls vs native exports
"""

from __future__ import annotations

import structlog

from blevalidation.config import SourcePathsConfig
from blevalidation.systems.validation.engine import BaseAnalysisEngine
from blevalidation.systems.validation.errors import EngineInitError
from blevalidation.systems.validation.static_analysis.bridge import (
    BRIDGE_GLOBS,
    BRIDGE_RULES,
    collision_analysis,
    token_length_findings,
)
from blevalidation.systems.validation.static_analysis.native import (
    ANDROID_GLOBS,
    ANDROID_RULES,
    IOS_GLOBS,
    IOS_RULES,
)
from blevalidation.systems.validation.static_analysis.quality import (
    code_quality_findings,
    interface_findings,
)
from blevalidation.systems.validation.static_analysis.sources import (
    SourceFile,
    evaluate_rules,
    load_sources,
)
from blevalidation.systems.validation.types import (
    Severity,
    ValidationCategory,
    ValidationResult,
)

logger = structlog.get_logger()


class StaticAnalysisEngine(BaseAnalysisEngine):
    engine_name = "StaticAnalysisEngine"
    version = "1.0.0"
    phase_id = "static_analysis"
    phase_name = "Static Analysis"
    category = ValidationCategory.NATIVE
    total_steps = 4

    def __init__(
        self,
        sources: SourcePathsConfig,
        concurrent_sessions: int = 10,
        skip_optional_checks: bool = False,
    ) -> None:
        super().__init__()
        self._sources = sources
        self._concurrent_sessions = concurrent_sessions
        self._skip_optional = skip_optional_checks
        self._ios: list[SourceFile] = []
        self._android: list[SourceFile] = []
        self._bridge: list[SourceFile] = []
        self._log = logger.bind(system="validation.static_analysis")

    def _reset_state(self) -> None:
        self._ios = []
        self._android = []
        self._bridge = []

    async def _setup(self) -> None:
        root = self._sources.project_root
        if not root.is_dir():
            raise EngineInitError(self.engine_name, f"project root {root} does not exist")

        self._ios = load_sources(self._sources.resolve(self._sources.ios_module_dir), IOS_GLOBS)
        self._android = load_sources(
            self._sources.resolve(self._sources.android_module_dir), ANDROID_GLOBS,
        )
        self._bridge = load_sources(self._sources.resolve(self._sources.bridge_dir), BRIDGE_GLOBS)

        if not (self._ios or self._android or self._bridge):
            raise EngineInitError(
                self.engine_name,
                "no native module or bridge sources found under "
                f"{self._sources.ios_module_dir}, {self._sources.android_module_dir}, "
                f"{self._sources.bridge_dir}",
            )
        self._log.info(
            "static_sources_loaded",
            ios=len(self._ios),
            android=len(self._android),
            bridge=len(self._bridge),
        )

    async def _run(self) -> list[ValidationResult]:
        results: list[ValidationResult] = []

        self._progress.update("Analyzing native modules")
        results.extend(await self.analyze_native_modules())
        self._progress.update("Native modules analyzed", completed=True)

        self._progress.update("Analyzing bridge layer")
        results.extend(await self.analyze_bridge_layer())
        self._progress.update("Bridge layer analyzed", completed=True)

        if self._skip_optional:
            self._progress.warn("Code quality analysis skipped")
            self._progress.update("Code quality skipped", completed=True)
        else:
            self._progress.update("Analyzing code quality")
            results.extend(await self.analyze_code_quality())
            self._progress.update("Code quality analyzed", completed=True)

        self._progress.update("Validating interfaces")
        results.extend(await self.validate_interfaces())
        self._progress.update("Interfaces validated", completed=True)
        return results

    # ── Steps ────────────────────────────────────────────────────────────────

    async def analyze_native_modules(self) -> list[ValidationResult]:
        results: list[ValidationResult] = []
        for platform, files, rules in (
            ("ios", self._ios, IOS_RULES),
            ("android", self._android, ANDROID_RULES),
        ):
            if not files:
                self._progress.warn(f"No {platform} sources found")
                results.append(self._finding(
                    f"native_{platform}_sources",
                    f"{platform} native module sources",
                    passed=False,
                    message=f"No {platform} native module sources found; platform not analyzed",
                    severity=Severity.HIGH,
                    recommendations=[f"Point sources.{platform}_module_dir at the {platform} module"],
                ))
                continue
            platform_results = evaluate_rules(rules, files, f"native_{platform}")
            failed = sum(1 for r in platform_results if r.is_issue)
            self._log.info(
                "native_module_analyzed",
                platform=platform,
                files=len(files),
                rules=len(rules),
                failed=failed,
            )
            results.extend(platform_results)
        return results

    async def analyze_bridge_layer(self) -> list[ValidationResult]:
        if not self._bridge:
            self._progress.warn("No bridge-layer sources found")
            return [self._finding(
                "bridge_sources",
                "Bridge layer sources",
                passed=False,
                message="No bridge-layer sources found; BLE context and helpers not analyzed",
                severity=Severity.HIGH,
                category=ValidationCategory.BRIDGE,
                recommendations=["Point sources.bridge_dir at the BLE context/helper sources"],
            )]
        results = evaluate_rules(BRIDGE_RULES, self._bridge, "bridge")
        results.append(token_length_findings(self._bridge))
        results.append(collision_analysis(self._concurrent_sessions))
        self._log.info("bridge_layer_analyzed", files=len(self._bridge), findings=len(results))
        return results

    async def analyze_code_quality(self) -> list[ValidationResult]:
        return code_quality_findings([*self._ios, *self._android, *self._bridge])

    async def validate_interfaces(self) -> list[ValidationResult]:
        return interface_findings(self._ios, self._android, self._bridge)
