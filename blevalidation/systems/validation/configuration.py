"""
BLE Validation — Configuration Audit Engine

Audits the Expo app and build configuration that BLE attendance depends on:
app.config.js / app.json (beacon UUID, plugins, iOS usage strings, Android
permissions), eas.json build profiles, and package.json dependencies.

package.json is the only required input; the rest are reported as findings
when absent.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import structlog

from blevalidation.config import SourcePathsConfig
from blevalidation.systems.validation.engine import BaseAnalysisEngine
from blevalidation.systems.validation.errors import EngineInitError, SourceParseError
from blevalidation.systems.validation.types import (
    Evidence,
    EvidenceType,
    Severity,
    ValidationCategory,
    ValidationResult,
    ValidationStatus,
)

logger = structlog.get_logger()

_UUID = re.compile(r"^[0-9A-F]{8}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{12}$", re.IGNORECASE)
_APP_UUID = re.compile(r"[\"']?APP_UUID[\"']?\s*:\s*(?:[^\"'\n]*\|\|\s*)?[\"']([^\"']*)[\"']")
_SDK_VERSION = re.compile(r"[\"']?(minSdkVersion|targetSdkVersion|compileSdkVersion)[\"']?\s*:\s*(\d+)")
_ZERO_UUID = "00000000-0000-0000-0000-000000000000"

IOS_USAGE_DESCRIPTIONS: tuple[str, ...] = (
    "NSBluetoothAlwaysUsageDescription",
    "NSBluetoothPeripheralUsageDescription",
    "NSLocationWhenInUseUsageDescription",
    "NSLocationAlwaysAndWhenInUseUsageDescription",
)
_USAGE_KEYWORDS = re.compile(r"bluetooth|attendance|beacon", re.IGNORECASE)

IOS_BACKGROUND_MODES: tuple[str, ...] = ("bluetooth-central", "bluetooth-peripheral", "location")

# Runtime BLE on Android 12+ needs these; the rest cover older API levels
ANDROID_REQUIRED_PERMISSIONS: tuple[str, ...] = (
    "BLUETOOTH_ADVERTISE",
    "BLUETOOTH_CONNECT",
    "BLUETOOTH_SCAN",
    "ACCESS_FINE_LOCATION",
)
ANDROID_LEGACY_PERMISSIONS: tuple[str, ...] = (
    "BLUETOOTH",
    "BLUETOOTH_ADMIN",
    "ACCESS_COARSE_LOCATION",
    "FOREGROUND_SERVICE",
)

MIN_TARGET_SDK = 31
MIN_EXPO_SDK = 49

EAS_PROFILES: dict[str, bool] = {"development": True, "preview": False, "production": True}
EAS_ENV_VARS: dict[str, tuple[str, ...]] = {
    "EXPO_PUBLIC_BLE_ENABLED": ("development", "production"),
    "EXPO_PUBLIC_ENVIRONMENT": ("development", "preview", "production"),
}

REQUIRED_DEPENDENCIES: tuple[str, ...] = (
    "expo-constants",
    "expo-device",
    "expo-build-properties",
)
CONFLICTING_DEPENDENCIES: dict[str, str] = {
    "react-native-ble-manager": "duplicates the native beacon modules' BLE stack",
    "react-native-beacons-manager": "registers a competing beacon region monitor",
}


def _load_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise SourceParseError(str(path), str(exc)) from exc
    if not isinstance(data, dict):
        raise SourceParseError(str(path), "top-level value is not an object")
    return data


def _string_value(text: str, key: str) -> str | None:
    match = re.search(
        rf"[\"']?{re.escape(key)}[\"']?\s*:\s*(?:[^\"'\n]*\|\|\s*)?[\"']([^\"']*)[\"']", text,
    )
    return match.group(1) if match else None


class ConfigurationAuditEngine(BaseAnalysisEngine):
    engine_name = "ConfigurationAuditEngine"
    version = "1.0.0"
    phase_id = "configuration_audit"
    phase_name = "Configuration Audit"
    category = ValidationCategory.CONFIG
    total_steps = 4

    def __init__(self, sources: SourcePathsConfig) -> None:
        super().__init__()
        self._sources = sources
        self._package: dict[str, Any] = {}
        self._eas: dict[str, Any] | None = None
        self._eas_error: str | None = None
        self._app_text = ""
        self._app_files: list[str] = []
        self._collected: list[ValidationResult] = []
        self._log = logger.bind(system="validation.configuration")

    def _reset_state(self) -> None:
        self._package = {}
        self._eas = None
        self._eas_error = None
        self._app_text = ""
        self._app_files = []
        self._collected = []

    async def _setup(self) -> None:
        package_path = self._sources.resolve(self._sources.package_json)
        if not package_path.is_file():
            raise EngineInitError(self.engine_name, f"{self._sources.package_json} not found")
        try:
            self._package = _load_json(package_path)
        except SourceParseError as exc:
            raise EngineInitError(self.engine_name, str(exc)) from exc

        texts: list[str] = []
        for name in (self._sources.app_config_js, self._sources.app_json):
            path = self._sources.resolve(name)
            if path.is_file():
                texts.append(path.read_text(encoding="utf-8", errors="replace"))
                self._app_files.append(name)
            else:
                self._progress.warn(f"{name} not found")
        self._app_text = "\n".join(texts)

        eas_path = self._sources.resolve(self._sources.eas_json)
        if eas_path.is_file():
            try:
                self._eas = _load_json(eas_path)
            except SourceParseError as exc:
                self._eas_error = str(exc)
                self._log.warning("eas_config_unparseable", error=str(exc))
        else:
            self._progress.warn(f"{self._sources.eas_json} not found")

        self._log.info(
            "configuration_loaded",
            app_files=self._app_files,
            eas=self._eas is not None,
        )

    async def _run(self) -> list[ValidationResult]:
        results: list[ValidationResult] = []
        for label, audit in (
            ("app configuration", self.audit_app_configuration),
            ("build configuration", self.audit_build_configuration),
            ("permissions", self.audit_permissions),
            ("deployment readiness", self.validate_deployment_readiness),
        ):
            self._progress.update(f"Auditing {label}")
            results.extend(await audit())
            self._progress.update(f"Audited {label}", completed=True)
        return results

    def _config_issue(self, location: str, details: str, severity: Severity) -> list[Evidence]:
        return [Evidence(
            type=EvidenceType.CONFIG_ISSUE, location=location, details=details, severity=severity,
        )]

    def _collect(self, results: list[ValidationResult]) -> list[ValidationResult]:
        self._collected.extend(results)
        return results

    # ── App configuration ────────────────────────────────────────────────────

    async def audit_app_configuration(self) -> list[ValidationResult]:
        if not self._app_text:
            return self._collect([self._finding(
                "config_app_file", "App configuration file",
                passed=False,
                message=f"Neither {self._sources.app_config_js} nor {self._sources.app_json} found",
                severity=Severity.HIGH,
                recommendations=["Add app.config.js with BLE settings under extra"],
            )])
        location = ", ".join(self._app_files)
        return self._collect([
            self._audit_app_uuid(location),
            self._audit_beacon_modules(),
            self._audit_sdk_versions(location),
        ])

    def _audit_app_uuid(self, location: str) -> ValidationResult:
        match = _APP_UUID.search(self._app_text)
        value = match.group(1) if match else None
        if value is None:
            problem = "APP_UUID is not configured"
        elif not _UUID.match(value):
            problem = f"APP_UUID {value!r} is not a well-formed UUID"
        elif value == _ZERO_UUID:
            problem = "APP_UUID is the all-zero placeholder"
        else:
            problem = ""
        return self._finding(
            "config_app_uuid", "Beacon UUID",
            passed=not problem,
            message=problem or f"APP_UUID configured as {value}",
            severity=Severity.HIGH,
            details={"app_uuid": value},
            evidence=self._config_issue(location, problem, Severity.HIGH) if problem else None,
            recommendations=["Set extra.APP_UUID to the organization's beacon proximity UUID"],
        )

    def _audit_beacon_modules(self) -> ValidationResult:
        module_dirs = [
            self._sources.resolve(self._sources.ios_module_dir).parent,
            self._sources.resolve(self._sources.android_module_dir).parent,
        ]
        registered = [d.name for d in module_dirs if (d / "expo-module.config.json").is_file()]
        referenced = [
            d.name for d in module_dirs
            if d.name in self._app_text or d.name in json.dumps(self._package)
        ]
        found = sorted(set(registered) | set(referenced))
        return self._finding(
            "config_beacon_modules", "Native beacon module registration",
            passed=len(found) == len(module_dirs),
            conditional=True,
            message=(
                f"Beacon modules registered: {', '.join(found)}"
                if found else "No native beacon module is registered with Expo autolinking"
            ),
            severity=Severity.MEDIUM,
            details={"registered": found},
            recommendations=["Add expo-module.config.json to each native beacon module"],
        )

    def _audit_sdk_versions(self, location: str) -> ValidationResult:
        versions = {m.group(1): int(m.group(2)) for m in _SDK_VERSION.finditer(self._app_text)}
        target = versions.get("targetSdkVersion")
        if target is None:
            return self._finding(
                "config_android_sdk", "Android SDK levels",
                passed=False, conditional=True,
                message="targetSdkVersion not set in expo-build-properties; Expo default applies",
                severity=Severity.LOW,
                details=versions,
                recommendations=[f"Pin targetSdkVersion >= {MIN_TARGET_SDK} via expo-build-properties"],
            )
        return self._finding(
            "config_android_sdk", "Android SDK levels",
            passed=target >= MIN_TARGET_SDK,
            message=(
                f"targetSdkVersion {target}"
                + ("" if target >= MIN_TARGET_SDK else f" is below {MIN_TARGET_SDK}; BLUETOOTH_SCAN is unavailable")
            ),
            severity=Severity.HIGH,
            details=versions,
            evidence=None if target >= MIN_TARGET_SDK else self._config_issue(
                location, f"targetSdkVersion {target}", Severity.HIGH,
            ),
            recommendations=[f"Raise targetSdkVersion to at least {MIN_TARGET_SDK}"],
        )

    # ── Build configuration ──────────────────────────────────────────────────

    async def audit_build_configuration(self) -> list[ValidationResult]:
        results = [*self._audit_eas(), *self._audit_dependencies()]
        return self._collect(results)

    def _audit_eas(self) -> list[ValidationResult]:
        if self._eas_error is not None:
            return [self._finding(
                "config_eas_profiles", "EAS build profiles",
                passed=False,
                message=f"eas.json could not be parsed: {self._eas_error}",
                severity=Severity.HIGH,
                recommendations=["Fix the JSON syntax of eas.json"],
            )]
        if self._eas is None:
            return [self._finding(
                "config_eas_profiles", "EAS build profiles",
                passed=False, conditional=True,
                message="eas.json not found; native modules need EAS development builds",
                severity=Severity.MEDIUM,
                recommendations=["Add eas.json with development, preview and production profiles"],
            )]

        build = self._eas.get("build", {}) if isinstance(self._eas.get("build"), dict) else {}
        missing_required = [p for p, required in EAS_PROFILES.items() if required and p not in build]
        missing_optional = [p for p, required in EAS_PROFILES.items() if not required and p not in build]
        dev = build.get("development", {})
        no_dev_client = isinstance(dev, dict) and "development" in build and not dev.get("developmentClient")
        problems = [f"missing required profile '{p}'" for p in missing_required]
        if no_dev_client:
            problems.append("development profile does not set developmentClient")
        problems.extend(f"missing optional profile '{p}'" for p in missing_optional)

        results = [self._finding(
            "config_eas_profiles", "EAS build profiles",
            passed=not problems,
            conditional=not missing_required,
            message="; ".join(problems) if problems else "development, preview and production profiles configured",
            severity=Severity.HIGH if missing_required else Severity.MEDIUM if no_dev_client else Severity.LOW,
            details={"profiles": sorted(build)},
            evidence=[
                Evidence(type=EvidenceType.CONFIG_ISSUE, location=f"eas.json -> build.{p}",
                         details=f"Required EAS profile missing: {p}", severity=Severity.HIGH)
                for p in missing_required
            ],
            recommendations=["Define the missing EAS profiles and enable developmentClient"],
        )]

        missing_env = [
            f"{var} in {profile}"
            for var, profiles in EAS_ENV_VARS.items()
            for profile in profiles
            if profile in build
            and var not in (build[profile].get("env", {}) if isinstance(build[profile], dict) else {})
        ]
        results.append(self._finding(
            "config_eas_environment", "EAS build environment",
            passed=not missing_env,
            conditional=True,
            message=(
                "BLE environment variables set in every profile"
                if not missing_env else "Missing: " + ", ".join(missing_env)
            ),
            severity=Severity.MEDIUM,
            details={"missing": missing_env},
            recommendations=["Set EXPO_PUBLIC_BLE_ENABLED and EXPO_PUBLIC_ENVIRONMENT per profile"],
        ))
        return results

    def _dependencies(self) -> dict[str, str]:
        deps: dict[str, str] = {}
        for key in ("dependencies", "devDependencies"):
            section = self._package.get(key)
            if isinstance(section, dict):
                deps.update({str(k): str(v) for k, v in section.items()})
        return deps

    def _audit_dependencies(self) -> list[ValidationResult]:
        deps = self._dependencies()
        results: list[ValidationResult] = []

        expo = deps.get("expo")
        major_match = re.search(r"(\d+)", expo) if expo else None
        major = int(major_match.group(1)) if major_match else None
        if expo is None:
            results.append(self._finding(
                "config_expo_sdk", "Expo SDK",
                passed=False,
                message="expo is not a dependency; native beacon modules cannot be autolinked",
                severity=Severity.HIGH,
                recommendations=["Add the expo package"],
            ))
        else:
            results.append(self._finding(
                "config_expo_sdk", "Expo SDK",
                passed=major is not None and major >= MIN_EXPO_SDK,
                conditional=True,
                message=f"Expo SDK {expo}",
                severity=Severity.MEDIUM,
                details={"expo": expo, "major": major},
                recommendations=[f"Upgrade to Expo SDK {MIN_EXPO_SDK} or newer"],
            ))

        missing = [d for d in REQUIRED_DEPENDENCIES if d not in deps]
        conflicts = {d: why for d, why in CONFLICTING_DEPENDENCIES.items() if d in deps}
        problems = [f"missing {d}" for d in missing] + [f"{d} {why}" for d, why in conflicts.items()]
        results.append(self._finding(
            "config_native_dependencies", "Native module dependencies",
            passed=not problems,
            conditional=not conflicts,
            message="; ".join(problems) if problems else "Required native module dependencies present",
            severity=Severity.HIGH if conflicts else Severity.MEDIUM,
            details={"missing": missing, "conflicts": sorted(conflicts)},
            evidence=[
                Evidence(type=EvidenceType.CONFIG_ISSUE, location=f"package.json -> dependencies.{d}",
                         details=why, severity=Severity.HIGH)
                for d, why in conflicts.items()
            ],
            recommendations=["Install the missing Expo modules and remove competing BLE libraries"],
        ))

        results.append(self._finding(
            "config_dev_client", "Development client",
            passed="expo-dev-client" in deps,
            conditional=True,
            message=(
                "expo-dev-client installed" if "expo-dev-client" in deps
                else "expo-dev-client missing; BLE cannot be exercised in Expo Go"
            ),
            severity=Severity.LOW,
            recommendations=["Install expo-dev-client for on-device BLE testing"],
        ))
        return results

    # ── Permissions ──────────────────────────────────────────────────────────

    async def audit_permissions(self) -> list[ValidationResult]:
        if not self._app_text:
            return self._collect([self._finding(
                "config_permissions", "Permission declarations",
                passed=False,
                message="No app configuration; BLE permissions cannot be verified",
                severity=Severity.HIGH,
                recommendations=["Declare iOS usage descriptions and Android permissions in app config"],
            )])
        return self._collect([
            self._audit_ios_usage(),
            self._audit_background_modes(),
            self._audit_android_permissions(),
        ])

    def _audit_ios_usage(self) -> ValidationResult:
        missing: list[str] = []
        vague: list[str] = []
        for key in IOS_USAGE_DESCRIPTIONS:
            value = _string_value(self._app_text, key)
            if not value:
                missing.append(key)
            elif not _USAGE_KEYWORDS.search(value):
                vague.append(key)
        problems = [f"{k} missing" for k in missing] + [
            f"{k} does not mention Bluetooth or attendance" for k in vague
        ]
        return self._finding(
            "config_ios_usage_descriptions", "iOS usage descriptions",
            passed=not problems,
            conditional=not missing,
            message="; ".join(problems) if problems else "All BLE and location usage descriptions present",
            severity=Severity.HIGH if missing else Severity.LOW,
            details={"missing": missing, "vague": vague},
            evidence=[
                Evidence(type=EvidenceType.CONFIG_ISSUE, location="ios.infoPlist",
                         details=f"{k} missing", severity=Severity.HIGH)
                for k in missing
            ],
            recommendations=["Explain Bluetooth attendance use in every iOS usage description"],
        )

    def _audit_background_modes(self) -> ValidationResult:
        match = re.search(r"[\"']?UIBackgroundModes[\"']?\s*:\s*\[([^\]]*)\]", self._app_text)
        declared = re.findall(r"[\"']([\w-]+)[\"']", match.group(1)) if match else []
        missing = [m for m in IOS_BACKGROUND_MODES if m not in declared]
        return self._finding(
            "config_ios_background_modes", "iOS background modes",
            passed=not missing,
            message=(
                "Bluetooth and location background modes declared"
                if not missing else f"UIBackgroundModes missing {', '.join(missing)}"
            ),
            severity=Severity.HIGH,
            details={"declared": declared, "missing": missing},
            recommendations=["Add bluetooth-central, bluetooth-peripheral and location to UIBackgroundModes"],
        )

    def _audit_android_permissions(self) -> ValidationResult:
        declared = set(re.findall(r"android\.permission\.(\w+)", self._app_text))
        quoted = re.search(r"[\"']?permissions[\"']?\s*:\s*\[([^\]]*)\]", self._app_text)
        if quoted:
            declared.update(re.findall(r"[\"'](?:android\.permission\.)?([A-Z_]+)[\"']", quoted.group(1)))
        missing_required = [p for p in ANDROID_REQUIRED_PERMISSIONS if p not in declared]
        missing_legacy = [p for p in ANDROID_LEGACY_PERMISSIONS if p not in declared]
        problems = missing_required + missing_legacy
        return self._finding(
            "config_android_permissions", "Android permissions",
            passed=not problems,
            conditional=not missing_required,
            message=(
                "All BLE and location permissions declared"
                if not problems else f"Missing Android permissions: {', '.join(problems)}"
            ),
            severity=Severity.HIGH if missing_required else Severity.MEDIUM,
            details={"declared": sorted(declared), "missing": problems},
            evidence=[
                Evidence(type=EvidenceType.CONFIG_ISSUE, location="android.permissions",
                         details=f"android.permission.{p} not declared", severity=Severity.HIGH)
                for p in missing_required
            ],
            recommendations=["Declare the Android 12+ Bluetooth runtime permissions"],
        )

    # ── Roll-up ──────────────────────────────────────────────────────────────

    async def validate_deployment_readiness(self) -> list[ValidationResult]:
        if not self._collected:
            await self.audit_app_configuration()
            await self.audit_build_configuration()
            await self.audit_permissions()
        failed = [r for r in self._collected if r.status == ValidationStatus.FAIL]
        conditional = [r for r in self._collected if r.status == ValidationStatus.CONDITIONAL]
        if failed:
            message = f"{len(failed)} configuration checks failed: " + ", ".join(r.id for r in failed)
        elif conditional:
            message = f"{len(conditional)} configuration checks need attention"
        else:
            message = f"All {len(self._collected)} configuration checks passed"
        return [self._finding(
            "config_deployment_readiness", "Configuration deployment readiness",
            passed=not failed and not conditional,
            conditional=not failed,
            message=message,
            severity=Severity.HIGH if failed else Severity.LOW,
            details={
                "checks": len(self._collected),
                "failed": [r.id for r in failed],
                "conditional": [r.id for r in conditional],
            },
            recommendations=["Resolve the failed configuration checks before building for release"],
        )]
