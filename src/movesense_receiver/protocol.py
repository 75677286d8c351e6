"""Movesense GATT identifiers and command payloads.

Commands are raw byte arrays: a one-byte request verb followed by the ASCII
resource path, e.g. ``SUBSCRIBE /Meas/Acc/104``. The legacy sequences below
carry a resource id byte (0x62..0x65) between the verb and the path; that is
the form the supported firmware actually answers to.
"""

from __future__ import annotations

from .models import Command


# Movesense GATT service and characteristics
MOVESENSE_SERVICE = "34802252-7185-4d5d-b431-630e7050e8f0"
MOVESENSE_COMMAND_CHAR = "34800001-7185-4d5d-b431-630e7050e8f0"  # Write
MOVESENSE_NOTIFY_CHAR = "34800002-7185-4d5d-b431-630e7050e8f0"  # Notify

DEVICE_NAME_PREFIX = "Movesense"

# Request verbs
GET = 0x01
PUT = 0x02
POST = 0x03
DELETE = 0x04
SUBSCRIBE = 0x0C
UNSUBSCRIBE = 0x00

# Resource ids used by the legacy command set and echoed back in frames
RESOURCE_TEMPERATURE = 0x62  # also carries accelerometer frames
RESOURCE_HR_ECG = 0x63
RESOURCE_GYROSCOPE = 0x64
RESOURCE_MAGNETOMETER = 0x65
RESOURCE_SYSTEM = 0x11


def create_command(method: int, path: str) -> bytes:
    """Encode ``[method] + path`` as a request payload."""
    if not 0 <= method <= 0xFF:
        raise ValueError(f"Request verb out of range: {method}")
    return bytes([method]) + path.encode("ascii")


def _legacy(method: int, resource_id: int, path: str) -> bytes:
    return bytes([method, resource_id]) + path.encode("ascii")


LEGACY_COMMANDS: dict[str, bytes] = {
    "TEMPERATURE": _legacy(GET, RESOURCE_TEMPERATURE, "/Meas/Temp"),
    "ACCELEROMETER": _legacy(SUBSCRIBE, RESOURCE_TEMPERATURE, "/Meas/Acc/104"),
    "HEART_RATE": _legacy(SUBSCRIBE, RESOURCE_HR_ECG, "/Meas/HR"),
    "ECG": _legacy(GET, RESOURCE_HR_ECG, "/Meas/ECG/125"),
    "GYROSCOPE": _legacy(SUBSCRIBE, RESOURCE_GYROSCOPE, "/Meas/Gyro/104"),
    "MAGNETOMETER": _legacy(SUBSCRIBE, RESOURCE_MAGNETOMETER, "/Meas/Magn/104"),
    # Alternate short forms some firmware revisions accept
    "TEMP_ALT1": bytes([GET, RESOURCE_TEMPERATURE, 0x01]),
    "ACC_ALT1": bytes([SUBSCRIBE, RESOURCE_TEMPERATURE, 0x01]),
    "HR_ALT1": bytes([SUBSCRIBE, RESOURCE_HR_ECG, 0x01]),
    "GYRO_ALT1": bytes([SUBSCRIBE, RESOURCE_GYROSCOPE, 0x01]),
    "MAGN_ALT1": bytes([SUBSCRIBE, RESOURCE_MAGNETOMETER, 0x01]),
    "ECG_ALT1": bytes([GET, RESOURCE_HR_ECG, 0x01]),
    # Sample rate variants
    "ACC_13HZ": _legacy(SUBSCRIBE, RESOURCE_TEMPERATURE, "/Meas/Acc/13"),
    "ACC_26HZ": _legacy(SUBSCRIBE, RESOURCE_TEMPERATURE, "/Meas/Acc/26"),
    "ACC_52HZ": _legacy(SUBSCRIBE, RESOURCE_TEMPERATURE, "/Meas/Acc/52"),
    "GYRO_13HZ": _legacy(SUBSCRIBE, RESOURCE_GYROSCOPE, "/Meas/Gyro/13"),
    "GYRO_26HZ": _legacy(SUBSCRIBE, RESOURCE_GYROSCOPE, "/Meas/Gyro/26"),
    "GYRO_52HZ": _legacy(SUBSCRIBE, RESOURCE_GYROSCOPE, "/Meas/Gyro/52"),
    "ECG_250HZ": _legacy(GET, RESOURCE_HR_ECG, "/Meas/ECG/250"),
    "ECG_500HZ": _legacy(GET, RESOURCE_HR_ECG, "/Meas/ECG/500"),
    # Stop (unsubscribe) commands
    "STOP_TEMP": _legacy(UNSUBSCRIBE, RESOURCE_TEMPERATURE, "/Meas/Temp"),
    "STOP_ACC": _legacy(UNSUBSCRIBE, RESOURCE_TEMPERATURE, "/Meas/Acc"),
    "STOP_HR": _legacy(UNSUBSCRIBE, RESOURCE_HR_ECG, "/Meas/HR"),
    "STOP_GYRO": _legacy(UNSUBSCRIBE, RESOURCE_GYROSCOPE, "/Meas/Gyro"),
    "STOP_MAGN": _legacy(UNSUBSCRIBE, RESOURCE_MAGNETOMETER, "/Meas/Magn"),
    "STOP_ECG": _legacy(UNSUBSCRIBE, RESOURCE_HR_ECG, "/Meas/ECG"),
    # Device information
    "INFO": _legacy(GET, RESOURCE_SYSTEM, "/System/Info"),
    "BATTERY": _legacy(GET, RESOURCE_SYSTEM, "/System/Energy/Level"),
}


def subscription_sequence() -> list[Command]:
    """Commands sent after every (re)connect to start all six sensors."""
    return [
        Command(LEGACY_COMMANDS["TEMPERATURE"], "Temperature sensor"),
        Command(LEGACY_COMMANDS["ACCELEROMETER"], "Accelerometer sensor"),
        Command(LEGACY_COMMANDS["HEART_RATE"], "Heart rate sensor"),
        Command(LEGACY_COMMANDS["GYROSCOPE"], "Gyroscope sensor"),
        Command(LEGACY_COMMANDS["MAGNETOMETER"], "Magnetometer sensor"),
        Command(LEGACY_COMMANDS["ECG"], "ECG sensor"),
    ]


def stop_sequence() -> list[Command]:
    """Commands that unsubscribe every sensor."""
    return [
        Command(LEGACY_COMMANDS["STOP_TEMP"], "Stop temperature"),
        Command(LEGACY_COMMANDS["STOP_ACC"], "Stop accelerometer"),
        Command(LEGACY_COMMANDS["STOP_HR"], "Stop heart rate"),
        Command(LEGACY_COMMANDS["STOP_GYRO"], "Stop gyroscope"),
        Command(LEGACY_COMMANDS["STOP_MAGN"], "Stop magnetometer"),
        Command(LEGACY_COMMANDS["STOP_ECG"], "Stop ECG"),
    ]
