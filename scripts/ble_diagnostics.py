#!/usr/bin/env python3
"""
BLE connection diagnostics and troubleshooting tool for quest sensors.
"""

import asyncio
import base64
import logging
import platform
import re
import subprocess
import sys
from typing import List, Tuple

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from quest_sensor_logger.config import (
    SENSOR_CHARACTERISTIC_UUID,
    SENSOR_NAME_PATTERN,
    SENSOR_SERVICE_UUID,
)
from quest_sensor_logger.sampling import decode_temperature

# Configure logging for diagnostics tool
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",  # Simple format for user-friendly output
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

SENSOR_NAME_RE = re.compile(SENSOR_NAME_PATTERN, re.IGNORECASE)


def check_bluetooth_status() -> bool:
    """Check if Bluetooth is available and working."""
    logger.info("🔵 Checking Bluetooth status...")

    system = platform.system().lower()
    if system == "darwin":
        command, marker = ["system_profiler", "SPBluetoothDataType"], "State: On"
    elif system == "linux":
        command, marker = ["bluetoothctl", "show"], "Powered: yes"
    else:
        logger.warning(f"⚠️ Bluetooth status check not implemented for {system}")
        return True

    try:
        result = subprocess.run(command, capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"⚠️ Could not check Bluetooth status on {system}: {e}")
        return True  # Assume it's working

    if marker in result.stdout:
        logger.info(f"✅ Bluetooth is powered on ({system})")
        return True
    logger.error(f"❌ Bluetooth appears to be powered off ({system})")
    return False


async def scan_for_sensors(duration: float = 10.0) -> List[Tuple[BLEDevice, AdvertisementData]]:
    """Scan for nearby BLE devices and return the quest sensors among them."""
    logger.info(f"📡 Scanning for BLE devices for {duration}s...")

    try:
        found = await BleakScanner.discover(timeout=duration, return_adv=True)
    except BleakError as e:
        logger.error(f"❌ Error during BLE scan: {e}")
        return []

    if not found:
        logger.error("❌ No BLE devices found")
        logger.info("💡 Troubleshooting:")
        logger.info("   - Make sure the quest sensor is switched on")
        logger.info("   - Move closer to the sensor")
        return []

    logger.info(f"✅ Found {len(found)} BLE device(s):")
    sensors = []
    for device, adv in found.values():
        name = device.name or adv.local_name or "Unknown"
        logger.info(f"   📱 {name} ({device.address}) RSSI: {adv.rssi}dBm")
        if SENSOR_NAME_RE.search(name):
            sensors.append((device, adv))
            logger.info("      🎯 Quest sensor found!")

    if not sensors:
        logger.warning("\n⚠️ No devices with a name starting with 'quest' found")
    return sensors


async def test_sensor_read(device: BLEDevice) -> None:
    """Connect to a sensor and read its temperature characteristic three times."""
    logger.info(f"\n🔌 Testing connection to {device.name}...")
    try:
        async with BleakClient(device) as client:
            logger.info("✅ Connected")
            service = client.services.get_service(SENSOR_SERVICE_UUID)
            if service is None:
                logger.error(f"❌ Service {SENSOR_SERVICE_UUID} not found")
                return
            characteristic = service.get_characteristic(SENSOR_CHARACTERISTIC_UUID)
            if characteristic is None:
                logger.error(f"❌ Characteristic {SENSOR_CHARACTERISTIC_UUID} not found")
                return
            for i in range(3):
                data = await client.read_gatt_char(characteristic)
                if not data:
                    logger.warning(f"⚠️ Read {i + 1}: empty payload")
                else:
                    payload = base64.b64encode(bytes(data)).decode("ascii")
                    logger.info(
                        f"📈 Read {i + 1}: {bytes(data)!r} -> {decode_temperature(payload)} °C"
                    )
                await asyncio.sleep(1.0)
    except (BleakError, asyncio.TimeoutError, OSError) as e:
        logger.error(f"❌ Connection test failed: {e}")


async def main() -> None:
    """Run BLE diagnostics."""
    logger.info("🔧 Quest Sensor BLE Diagnostics")
    logger.info("=" * 40)

    if not check_bluetooth_status():
        logger.error("\n❌ Bluetooth issues detected. Please enable Bluetooth and try again.")
        return

    sensors = await scan_for_sensors(duration=15.0)
    if sensors:
        strongest = max(sensors, key=lambda s: s[1].rssi)
        await test_sensor_read(strongest[0])

    logger.info("\n🏁 Diagnostics complete")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("\n👋 Diagnostics cancelled by user")
