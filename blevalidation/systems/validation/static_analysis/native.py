"""
Pattern tables for the native iOS (CoreBluetooth / CoreLocation) and
Android (android.bluetooth.le / AltBeacon) beacon modules.
"""

from __future__ import annotations

from blevalidation.systems.validation.static_analysis.sources import PatternRule, rule
from blevalidation.systems.validation.types import Severity, ValidationCategory

IOS_GLOBS: tuple[str, ...] = ("*.swift", "*.m", "*.mm", "*.h")
ANDROID_GLOBS: tuple[str, ...] = ("*.kt", "*.java")

_BRIDGE = ValidationCategory.BRIDGE


# ── iOS ──────────────────────────────────────────────────────────────────────

IOS_RULES: tuple[PatternRule, ...] = (
    rule(
        "core_bluetooth_import", "CoreBluetooth import", r"^\s*(?:import CoreBluetooth|@import CoreBluetooth)",
        severity=Severity.HIGH,
        message="iOS module does not import CoreBluetooth",
        recommendation="Import CoreBluetooth in the beacon broadcaster module",
    ),
    rule(
        "peripheral_manager", "CBPeripheralManager usage", r"\bCBPeripheralManager\b",
        severity=Severity.CRITICAL,
        message="No CBPeripheralManager found; the module cannot advertise beacons",
        recommendation="Create a CBPeripheralManager to advertise iBeacon payloads",
    ),
    rule(
        "location_manager", "CLLocationManager usage", r"\bCLLocationManager\b",
        severity=Severity.HIGH,
        message="No CLLocationManager found; beacon ranging is unavailable",
        recommendation="Use CLLocationManager for beacon region monitoring and ranging",
    ),
    rule(
        "delegate_conformance", "Manager delegate conformance",
        r"CBPeripheralManagerDelegate|CLLocationManagerDelegate",
        severity=Severity.HIGH,
        message="Module does not conform to the CoreBluetooth/CoreLocation delegate protocols",
        recommendation="Implement CBPeripheralManagerDelegate and CLLocationManagerDelegate",
    ),
    rule(
        "event_emitter", "RCTEventEmitter subclass", r"\bRCTEventEmitter\b",
        severity=Severity.HIGH, category=_BRIDGE,
        message="Native module does not extend RCTEventEmitter; JS cannot receive beacon events",
        recommendation="Subclass RCTEventEmitter to deliver beacon events to JavaScript",
    ),
    rule(
        "supported_events", "supportedEvents override", r"\bsupportedEvents\b",
        severity=Severity.MEDIUM, category=_BRIDGE,
        message="supportedEvents is not declared; emitted events will be rejected",
        recommendation="Override supportedEvents() with every emitted event name",
    ),
    rule(
        "main_queue_setup", "requiresMainQueueSetup declaration", r"\brequiresMainQueueSetup\b",
        severity=Severity.MEDIUM, category=_BRIDGE,
        message="requiresMainQueueSetup is not declared",
        recommendation="Declare requiresMainQueueSetup() explicitly for the native module",
    ),
    rule(
        "beacon_region", "Beacon region definition", r"\bCLBeaconRegion\b|\bCLBeaconIdentityConstraint\b",
        severity=Severity.HIGH,
        message="No CLBeaconRegion found; attendance beacons cannot be described",
        recommendation="Build a CLBeaconRegion from the app UUID, major and minor",
    ),
    rule(
        "uuid_validation", "UUID parsing with validation", r"UUID\(uuidString:",
        severity=Severity.MEDIUM,
        message="Beacon UUID is not parsed with UUID(uuidString:)",
        recommendation="Validate incoming UUID strings with a guard on UUID(uuidString:)",
    ),
    rule(
        "authorization_request", "Location authorization request",
        r"request(?:WhenInUse|Always)Authorization",
        severity=Severity.HIGH,
        message="Location authorization is never requested",
        recommendation="Request location authorization before ranging beacons",
    ),
    rule(
        "bluetooth_state", "Bluetooth state handling", r"CBManagerState|peripheralManagerDidUpdateState",
        severity=Severity.MEDIUM,
        message="Bluetooth power/authorization state changes are not handled",
        recommendation="Handle peripheralManagerDidUpdateState before starting to advertise",
    ),
    rule(
        "background_task", "Background task handling", r"beginBackgroundTask|endBackgroundTask",
        severity=Severity.MEDIUM,
        message="No background task handling; advertising stops when the app is suspended",
        recommendation="Wrap broadcast lifecycle in beginBackgroundTask/endBackgroundTask",
    ),
    rule(
        "main_thread_dispatch", "Main-queue dispatch", r"DispatchQueue\.main",
        severity=Severity.LOW, category=_BRIDGE,
        message="Events are emitted without dispatching to the main queue",
        recommendation="Dispatch event emission and manager callbacks on DispatchQueue.main",
    ),
    rule(
        "closure_retain_cycle", "Strong self capture in async closure",
        r"\.async(?:After\([^)]*\))?\s*\{(?![^}]*\[(?:weak|unowned) self\])[^}]*\bself\.",
        required=False, severity=Severity.HIGH,
        message="Async closure captures self strongly; potential memory leak",
        recommendation="Capture [weak self] in escaping closures",
    ),
    rule(
        "forced_unwrap_manager", "Force-unwrapped manager",
        r"(?:peripheralManager|locationManager)!\.",
        required=False, severity=Severity.MEDIUM,
        message="Manager instances are force-unwrapped; crash risk when deallocated",
        recommendation="Use optional chaining or guard let for manager instances",
    ),
)


# ── Android ──────────────────────────────────────────────────────────────────

ANDROID_RULES: tuple[PatternRule, ...] = (
    rule(
        "ble_le_import", "android.bluetooth.le import", r"import android\.bluetooth\.le\.",
        severity=Severity.HIGH,
        message="Android module does not use android.bluetooth.le",
        recommendation="Use the android.bluetooth.le APIs for BLE advertising and scanning",
    ),
    rule(
        "advertiser", "BluetoothLeAdvertiser usage", r"\bBluetoothLeAdvertiser\b",
        severity=Severity.CRITICAL,
        message="No BluetoothLeAdvertiser found; the module cannot broadcast beacons",
        recommendation="Obtain a BluetoothLeAdvertiser from the BluetoothAdapter",
    ),
    rule(
        "scanner", "Beacon scanning", r"\bBluetoothLeScanner\b|\bBeaconManager\b",
        severity=Severity.HIGH,
        message="No scanner found; the module cannot detect beacons",
        recommendation="Use BluetoothLeScanner or the AltBeacon BeaconManager for detection",
    ),
    rule(
        "advertise_callback", "AdvertiseCallback handling", r"\bAdvertiseCallback\b",
        severity=Severity.HIGH,
        message="Advertising failures are not observed (no AdvertiseCallback)",
        recommendation="Implement AdvertiseCallback.onStartFailure and surface errors to JS",
    ),
    rule(
        "altbeacon", "AltBeacon library", r"org\.altbeacon",
        severity=Severity.LOW,
        message="AltBeacon library not used; beacon parsing must be hand-rolled",
        recommendation="Consider org.altbeacon for beacon parsing and ranging",
    ),
    rule(
        "beacon_layout", "iBeacon layout", r"\bBeaconParser\b|setBeaconLayout",
        severity=Severity.HIGH,
        message="No BeaconParser layout; iBeacon frames will not be recognised",
        recommendation="Register the iBeacon layout m:2-3=0215,i:4-19,i:20-21,i:22-23,p:24-24",
    ),
    rule(
        "ibeacon_prefix", "iBeacon manufacturer prefix", r"0x02\s*,\s*0x15|m:2-3=0215",
        severity=Severity.HIGH,
        message="iBeacon prefix 0x02 0x15 not found in advertised payload",
        recommendation="Prefix manufacturer data with 0x02 0x15 for iBeacon compatibility",
    ),
    rule(
        "scan_permission", "BLUETOOTH_SCAN permission check", r"BLUETOOTH_SCAN",
        severity=Severity.HIGH,
        message="BLUETOOTH_SCAN is never checked (required on Android 12+)",
        recommendation="Check BLUETOOTH_SCAN at runtime before scanning",
    ),
    rule(
        "advertise_permission", "BLUETOOTH_ADVERTISE permission check", r"BLUETOOTH_ADVERTISE",
        severity=Severity.HIGH,
        message="BLUETOOTH_ADVERTISE is never checked (required on Android 12+)",
        recommendation="Check BLUETOOTH_ADVERTISE at runtime before advertising",
    ),
    rule(
        "connect_permission", "BLUETOOTH_CONNECT permission check", r"BLUETOOTH_CONNECT",
        severity=Severity.MEDIUM,
        message="BLUETOOTH_CONNECT is never checked",
        recommendation="Check BLUETOOTH_CONNECT before touching adapter state",
    ),
    rule(
        "fine_location", "ACCESS_FINE_LOCATION check", r"ACCESS_FINE_LOCATION",
        severity=Severity.HIGH,
        message="ACCESS_FINE_LOCATION is never checked; scans return no results on older devices",
        recommendation="Request ACCESS_FINE_LOCATION for beacon scanning",
    ),
    rule(
        "runtime_permission", "Runtime permission check", r"checkSelfPermission",
        severity=Severity.HIGH,
        message="No runtime permission checks found",
        recommendation="Call checkSelfPermission before every BLE operation",
    ),
    rule(
        "security_exception", "SecurityException handling", r"\bSecurityException\b",
        severity=Severity.MEDIUM,
        message="SecurityException from revoked permissions is not handled",
        recommendation="Catch SecurityException around BLE calls and report it to JS",
    ),
    rule(
        "static_context", "Static Context reference",
        r"\bstatic\s+(?:\w+\s+)*(?:Context|Activity)\b|companion object.*\b(?:Context|Activity)\b",
        required=False, severity=Severity.HIGH,
        message="Context held in a static field; memory leak across activity restarts",
        recommendation="Hold the ReactApplicationContext or a WeakReference instead of a static Context",
    ),
    rule(
        "implicit_looper", "Handler without Looper", r"\bHandler\(\s*\)",
        required=False, severity=Severity.MEDIUM,
        message="Handler() created without an explicit Looper",
        recommendation="Construct Handler(Looper.getMainLooper()) explicitly",
    ),
    rule(
        "swallowed_exception", "Swallowed exception",
        r"catch\s*\([^)]*\)\s*\{\s*\}",
        required=False, severity=Severity.LOW,
        message="Empty catch block hides BLE failures",
        recommendation="Log or propagate exceptions from BLE calls",
    ),
)
