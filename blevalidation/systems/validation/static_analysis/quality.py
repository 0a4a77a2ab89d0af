"""
Code quality metrics and native/JS interface consistency.
"""

from __future__ import annotations

import re

from blevalidation.systems.validation.static_analysis.sources import SourceFile
from blevalidation.systems.validation.types import (
    Evidence,
    EvidenceType,
    Severity,
    ValidationCategory,
    ValidationResult,
    ValidationStatus,
)

MAX_FILE_LINES = 800

_TODO = re.compile(r"\b(?:TODO|FIXME|HACK|XXX)\b")
_ANY_TYPE = re.compile(r":\s*any\b|as\s+any\b")

# Methods exported to JavaScript by native code
_IOS_EXPORT = re.compile(r"@objc\s+(?:public\s+)?func\s+(\w+)|@objc\((\w+)[:)]")
_ANDROID_EXPORT = re.compile(r"@ReactMethod\s*(?:\n\s*)?(?:fun|public\s+void|void)\s+(\w+)")
_EXPO_EXPORT = re.compile(r"(?:Async)?Function\(\s*\"(\w+)\"")

# How the bridge layer binds native modules to local names
_BINDING = re.compile(
    r"(?:const|let|var)\s+(?:\{\s*(\w+)\s*\}|(\w+))\s*=\s*"
    r"(?:NativeModules(?:\.(\w+))?|requireNativeModule\(\s*['\"](\w+)['\"]\s*\))",
)


def _metric(
    id: str,
    name: str,
    offenders: list[tuple[SourceFile, str]],
    message_ok: str,
    message_bad: str,
    recommendation: str,
    scanned: int,
) -> ValidationResult:
    if not offenders:
        return ValidationResult(
            id=id, name=name,
            status=ValidationStatus.PASS, severity=Severity.INFO,
            category=ValidationCategory.NATIVE,
            message=message_ok,
            details={"files_scanned": scanned},
        )
    return ValidationResult(
        id=id, name=name,
        status=ValidationStatus.CONDITIONAL, severity=Severity.LOW,
        category=ValidationCategory.NATIVE,
        message=message_bad.format(count=len(offenders)),
        details={"files_scanned": scanned, "offending_files": len(offenders)},
        evidence=[
            Evidence(
                type=EvidenceType.CODE_REFERENCE,
                location=src.relative,
                details=detail,
                severity=Severity.LOW,
            )
            for src, detail in offenders[:10]
        ],
        recommendations=[recommendation],
    )


def code_quality_findings(files: list[SourceFile]) -> list[ValidationResult]:
    long_files = [
        (src, f"{src.line_count} lines") for src in files if src.line_count > MAX_FILE_LINES
    ]
    todos = [
        (src, f"{len(src.find(_TODO))} markers") for src in files if src.contains(_TODO)
    ]
    any_types = [
        (src, f"{len(src.find(_ANY_TYPE))} untyped values")
        for src in files
        if src.path.suffix in (".ts", ".tsx") and src.contains(_ANY_TYPE)
    ]
    return [
        _metric(
            "quality_file_size", "File size", long_files,
            f"All files under {MAX_FILE_LINES} lines",
            f"{{count}} file(s) exceed {MAX_FILE_LINES} lines",
            "Split oversized modules by responsibility",
            len(files),
        ),
        _metric(
            "quality_todo_markers", "Unresolved TODO markers", todos,
            "No TODO/FIXME markers left in BLE code",
            "{count} file(s) contain TODO/FIXME markers",
            "Resolve or ticket outstanding TODO/FIXME markers before release",
            len(files),
        ),
        _metric(
            "quality_untyped_values", "Untyped TypeScript values", any_types,
            "No `any` types in the bridge layer",
            "{count} TypeScript file(s) use `any`",
            "Replace `any` with concrete types for native module payloads",
            len(files),
        ),
    ]


def exported_methods(files: list[SourceFile]) -> set[str]:
    names: set[str] = set()
    for src in files:
        for pattern in (_IOS_EXPORT, _ANDROID_EXPORT, _EXPO_EXPORT):
            for match in pattern.finditer(src.text):
                names.update(g for g in match.groups() if g)
    return names


def called_methods(bridge_files: list[SourceFile]) -> dict[str, list[tuple[SourceFile, int]]]:
    """Methods invoked on native module bindings, with their call sites."""
    calls: dict[str, list[tuple[SourceFile, int]]] = {}
    for src in bridge_files:
        bindings = {
            m.group(1) or m.group(2) for m in _BINDING.finditer(src.text)
        }
        bindings.discard(None)
        for name in bindings:
            call = re.compile(rf"\b{re.escape(name)}\??\.(\w+)\s*\(")
            for line_no, line in enumerate(src.lines, start=1):
                for match in call.finditer(line):
                    calls.setdefault(match.group(1), []).append((src, line_no))
    return calls


# JS-side methods every RN event emitter exposes without native declarations
_BUILTIN_METHODS = frozenset({"addListener", "removeListeners", "removeAllListeners"})


def interface_findings(
    ios_files: list[SourceFile],
    android_files: list[SourceFile],
    bridge_files: list[SourceFile],
) -> list[ValidationResult]:
    ios = exported_methods(ios_files)
    android = exported_methods(android_files)
    calls = called_methods(bridge_files)
    results: list[ValidationResult] = []

    if not calls:
        results.append(ValidationResult(
            id="interface_bindings",
            name="Native module bindings",
            status=ValidationStatus.CONDITIONAL,
            severity=Severity.LOW,
            category=ValidationCategory.BRIDGE,
            message="No native module method calls found in the bridge layer; interface not verified",
            recommendations=["Call native modules through a named binding so calls can be verified"],
        ))
        return results

    exported = ios | android
    missing = {m: sites for m, sites in calls.items() if m not in exported and m not in _BUILTIN_METHODS}
    if missing:
        results.append(ValidationResult(
            id="interface_missing_methods",
            name="Undefined native methods",
            status=ValidationStatus.FAIL,
            severity=Severity.HIGH,
            category=ValidationCategory.BRIDGE,
            message=f"Bridge calls {len(missing)} method(s) no native module exports: "
                    + ", ".join(sorted(missing)),
            details={"missing": sorted(missing)},
            evidence=[
                Evidence(
                    type=EvidenceType.CODE_REFERENCE,
                    location=src.relative,
                    details=f"call to {method}()",
                    severity=Severity.HIGH,
                    line_number=line_no,
                )
                for method, sites in sorted(missing.items())
                for src, line_no in sites[:2]
            ],
            recommendations=["Export every method the bridge calls from both native modules"],
        ))
    else:
        results.append(ValidationResult(
            id="interface_missing_methods",
            name="Undefined native methods",
            status=ValidationStatus.PASS,
            severity=Severity.INFO,
            category=ValidationCategory.BRIDGE,
            message=f"All {len(calls)} called native methods are exported",
        ))

    used = set(calls) - _BUILTIN_METHODS
    one_sided = sorted(
        m for m in used
        if ios_files and android_files and ((m in ios) != (m in android))
    )
    results.append(ValidationResult(
        id="interface_platform_parity",
        name="Platform method parity",
        status=ValidationStatus.CONDITIONAL if one_sided else ValidationStatus.PASS,
        severity=Severity.MEDIUM if one_sided else Severity.INFO,
        category=ValidationCategory.BRIDGE,
        message=(
            "Methods exported on only one platform: " + ", ".join(one_sided)
            if one_sided else "Called methods are exported on both platforms"
        ),
        details={"ios_exports": sorted(ios), "android_exports": sorted(android)},
        recommendations=["Guard platform-specific calls with Platform.OS checks"] if one_sided else [],
    ))
    return results
