"""
Serial (COM) port enumeration.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

import serial.tools.list_ports


logger = logging.getLogger(__name__)

_SERIAL_NUMBER = re.compile(r"SER=(\S+)")


@dataclass
class PortInfo:
    """Information about an available serial port."""

    name: str
    description: str
    hardware_id: str
    is_bluetooth: bool = False

    @property
    def serial_number(self) -> Optional[str]:
        """USB serial number from the hardware id, if the adapter reports one."""
        match = _SERIAL_NUMBER.search(self.hardware_id)
        return match.group(1) if match else None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "description": self.description,
            "hardware_id": self.hardware_id,
            "is_bluetooth": self.is_bluetooth,
        }


def list_available_ports(include_bluetooth: bool = True) -> List[PortInfo]:
    """
    List all available serial (COM) ports on the system.

    Args:
        include_bluetooth: If False, filter out Bluetooth virtual ports.

    Returns:
        List of PortInfo objects sorted by port name.
    """
    ports = []

    for port in serial.tools.list_ports.comports():
        desc_lower = (port.description or "").lower()
        is_bluetooth = "bluetooth" in desc_lower or "bth" in desc_lower

        if not include_bluetooth and is_bluetooth:
            continue

        ports.append(
            PortInfo(
                name=port.device,
                description=port.description or "Unknown",
                hardware_id=port.hwid or "",
                is_bluetooth=is_bluetooth,
            )
        )

    # Sort by port name for consistent ordering
    ports.sort(key=lambda p: p.name)

    logger.debug(f"Found {len(ports)} serial ports")
    return ports
