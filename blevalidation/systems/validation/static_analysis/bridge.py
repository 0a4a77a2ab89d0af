"""
Bridge-layer audit: the JavaScript/TypeScript BLE context, helper and
permission helper sitting between React Native and the native modules.

Also hosts the 16-bit minor-field collision model used to size how many
sessions may broadcast at once without ambiguous beacon payloads.
"""

from __future__ import annotations

import math
import re

from blevalidation.systems.validation.static_analysis.sources import (
    PatternRule,
    SourceFile,
    rule,
)
from blevalidation.systems.validation.types import (
    Evidence,
    EvidenceType,
    Severity,
    ValidationCategory,
    ValidationResult,
    ValidationStatus,
)

BRIDGE_GLOBS: tuple[str, ...] = ("*.ts", "*.tsx", "*.js", "*.jsx")

MINOR_FIELD_SPACE = 65_536
COLLISION_THRESHOLD = 0.01
MIN_TOKEN_LENGTH = 12
DEFAULT_UUID = "00000000-0000-0000-0000-000000000000"

_BRIDGE = ValidationCategory.BRIDGE
_SECURITY = ValidationCategory.SECURITY

BRIDGE_RULES: tuple[PatternRule, ...] = (
    rule(
        "native_module_binding", "Native module binding", r"NativeModules|requireNativeModule|NativeEventEmitter",
        severity=Severity.HIGH, category=_BRIDGE,
        message="Bridge layer never binds the native BLE modules",
        recommendation="Bind the native modules through NativeModules/requireNativeModule",
    ),
    rule(
        "listener_cleanup", "Event listener cleanup",
        r"\.remove\(\)|removeAllListeners|removeListener|removeSubscription",
        severity=Severity.HIGH, category=_BRIDGE,
        message="Native event listeners are never removed; listeners leak across mounts",
        recommendation="Return a cleanup from useEffect that removes every native subscription",
    ),
    rule(
        "effect_cleanup", "Effect cleanup function", r"return\s*\(\s*\)\s*=>",
        severity=Severity.MEDIUM, category=_BRIDGE,
        message="No effect returns a cleanup function",
        recommendation="Stop scanning/broadcasting in the effect cleanup",
    ),
    rule(
        "permission_request", "Permission request flow",
        r"requestPermissions|PermissionsAndroid\.request|requestMultiple|request\w*Permission",
        severity=Severity.HIGH, category=_BRIDGE,
        message="Bridge layer never requests BLE/location permissions",
        recommendation="Request Bluetooth and location permissions before starting BLE operations",
    ),
    rule(
        "permission_denied_handling", "Denied-permission handling",
        r"DENIED|NEVER_ASK_AGAIN|denied|blocked",
        severity=Severity.MEDIUM, category=_BRIDGE,
        message="Denied permissions are not handled",
        recommendation="Surface denied/blocked permissions with recovery guidance",
    ),
    rule(
        "bluetooth_state", "Bluetooth state tracking", r"bluetoothState|BluetoothState|onBluetoothStateChanged",
        severity=Severity.MEDIUM, category=_BRIDGE,
        message="Bluetooth adapter state is not tracked",
        recommendation="Track adapter state and pause BLE work while Bluetooth is off",
    ),
    rule(
        "error_handling", "Error handling around native calls", r"\bcatch\s*\(|\.catch\(",
        severity=Severity.MEDIUM, category=_BRIDGE,
        message="Native calls are not wrapped in error handling",
        recommendation="Wrap native BLE calls in try/catch and report failures",
    ),
    rule(
        "insecure_random", "Non-cryptographic randomness", r"Math\.random\s*\(",
        required=False, severity=Severity.CRITICAL, category=_SECURITY,
        message="Session tokens derive from Math.random, which is predictable",
        recommendation="Generate tokens with a cryptographically secure source (expo-crypto / crypto.getRandomValues)",
    ),
    rule(
        "weak_hash", "Weak hash function", r"\bmd5\b",
        required=False, severity=Severity.HIGH, category=_SECURITY, flags=re.IGNORECASE,
        message="md5 is used for hashing session data",
        recommendation="Use SHA-256 for any token hashing",
    ),
    rule(
        "default_uuid", "Default all-zero UUID", re.escape(DEFAULT_UUID),
        required=False, severity=Severity.HIGH, category=_BRIDGE,
        message="The all-zero UUID is used as a fallback; devices cannot be told apart",
        recommendation="Fail loudly when APP_UUID is missing instead of falling back to zeros",
    ),
    rule(
        "uuid_validation", "UUID validation", r"validateUUID|isValidUUID|isValidUuid|UUID_REGEX|uuidRegex",
        severity=Severity.MEDIUM, category=_BRIDGE,
        message="Beacon UUIDs are not validated before use",
        recommendation="Validate UUID format before passing it to the native module",
    ),
    rule(
        "console_logging", "Console logging of BLE data", r"console\.log\(.*(?:token|uuid|minor|major)",
        required=False, severity=Severity.LOW, category=_BRIDGE, flags=re.IGNORECASE,
        message="Beacon identifiers are written to the console",
        recommendation="Strip console logging of tokens and beacon identifiers from release builds",
    ),
)

_TOKEN_LENGTH = re.compile(
    r"(?:TOKEN_LENGTH|tokenLength|token_length|length)\s*[:=]\s*(\d+)",
)


def token_length_findings(files: list[SourceFile]) -> ValidationResult:
    """Declared token lengths shorter than MIN_TOKEN_LENGTH are a security finding."""
    lengths: list[tuple[SourceFile, int, int]] = []
    for src in files:
        for line_no, line in enumerate(src.lines, start=1):
            if "token" not in line.lower() and "TOKEN" not in line:
                continue
            for match in _TOKEN_LENGTH.finditer(line):
                lengths.append((src, line_no, int(match.group(1))))

    short = [(s, ln, n) for s, ln, n in lengths if n < MIN_TOKEN_LENGTH]
    if not lengths:
        return ValidationResult(
            id="bridge_token_length",
            name="Session token length",
            status=ValidationStatus.CONDITIONAL,
            severity=Severity.LOW,
            category=_SECURITY,
            message="No explicit session token length found in the bridge layer",
            recommendations=[f"Declare a token length of at least {MIN_TOKEN_LENGTH} characters"],
        )
    if short:
        return ValidationResult(
            id="bridge_token_length",
            name="Session token length",
            status=ValidationStatus.FAIL,
            severity=Severity.HIGH,
            category=_SECURITY,
            message=f"Session tokens shorter than {MIN_TOKEN_LENGTH} characters",
            details={"lengths": sorted({n for _, _, n in short})},
            evidence=[
                Evidence(
                    type=EvidenceType.SECURITY_FINDING,
                    location=s.relative,
                    details=f"token length {n}",
                    severity=Severity.HIGH,
                    line_number=ln,
                )
                for s, ln, n in short[:5]
            ],
            recommendations=[f"Use tokens of at least {MIN_TOKEN_LENGTH} characters"],
        )
    return ValidationResult(
        id="bridge_token_length",
        name="Session token length",
        status=ValidationStatus.PASS,
        severity=Severity.INFO,
        category=_SECURITY,
        message=f"Session tokens are at least {MIN_TOKEN_LENGTH} characters",
        details={"lengths": sorted({n for _, _, n in lengths})},
    )


# ── Collision model ──────────────────────────────────────────────────────────


def collision_probability(sessions: int, space: int = MINOR_FIELD_SPACE) -> float:
    """Birthday approximation n² / (2·space), capped at 1."""
    if sessions <= 1:
        return 0.0
    return min(1.0, sessions * sessions / (2 * space))


def max_recommended_sessions(
    space: int = MINOR_FIELD_SPACE,
    threshold: float = COLLISION_THRESHOLD,
) -> int:
    return math.floor(math.sqrt(space * threshold * 2))


def collision_analysis(concurrent_sessions: int) -> ValidationResult:
    """Risk of two simultaneous sessions hashing to the same minor value."""
    probability = collision_probability(concurrent_sessions)
    limit = max_recommended_sessions()
    details = {
        "concurrent_sessions": concurrent_sessions,
        "minor_field_space": MINOR_FIELD_SPACE,
        "collision_probability": round(probability, 6),
        "threshold": COLLISION_THRESHOLD,
        "max_recommended_sessions": limit,
    }
    if probability <= COLLISION_THRESHOLD:
        return ValidationResult(
            id="bridge_minor_collision",
            name="Minor field collision risk",
            status=ValidationStatus.PASS,
            severity=Severity.INFO,
            category=_BRIDGE,
            message=(
                f"{concurrent_sessions} concurrent sessions: collision probability "
                f"{probability:.2%} within {COLLISION_THRESHOLD:.0%}"
            ),
            details=details,
        )
    return ValidationResult(
        id="bridge_minor_collision",
        name="Minor field collision risk",
        status=ValidationStatus.CONDITIONAL,
        severity=Severity.HIGH,
        category=_BRIDGE,
        message=(
            f"{concurrent_sessions} concurrent sessions give a {probability:.2%} chance of "
            f"two sessions sharing a 16-bit minor value (limit {limit} sessions)"
        ),
        details=details,
        evidence=[Evidence(
            type=EvidenceType.PERFORMANCE_METRIC,
            location="minor field",
            details=f"P(collision) = n²/(2·{MINOR_FIELD_SPACE}) = {probability:.4f}",
            severity=Severity.HIGH,
        )],
        recommendations=[
            "Resolve sessions server-side by (org, minor) and reject ambiguous matches",
            f"Keep concurrent broadcasting sessions per organization under {limit}",
        ],
    )
