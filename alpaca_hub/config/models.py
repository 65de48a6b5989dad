"""
Configuration models using Pydantic for validation.

All configuration is loaded from config.json and validated at startup.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class DeviceType(str, Enum):
    """Alpaca device types served by the hub."""
    FOCUSER = "focuser"
    ROTATOR = "rotator"
    TELESCOPE = "telescope"


class BackendKind(str, Enum):
    """Supported backend families."""
    ZWO_EAF = "zwo_eaf"
    ZWO_CAA = "zwo_caa"
    IOPTRON = "ioptron"
    ROBOFOCUS = "robofocus"


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    ip: str = Field(default="0.0.0.0", description="IP address to bind to")
    port: int = Field(default=6800, ge=1, le=65535, description="HTTP port")
    server_name: str = Field(default="Alpaca Hub", description="Reported server name")
    location: str = Field(default="Observatory", description="Reported server location")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL"
    )
    file: Optional[str] = Field(
        default="alpaca_hub.log",
        description="Log file path (None for console only)"
    )
    max_file_bytes: int = Field(default=10 * 1024 * 1024, ge=1024)
    backup_count: int = Field(default=5, ge=0, le=50)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v):
        """Validate logging level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class SchedulerConfig(BaseModel):
    """Poll scheduler configuration."""

    workers: int = Field(default=4, ge=1, le=64, description="Parallel tick workers")
    idle_sleep_ms: int = Field(
        default=20, ge=1, le=1000, description="Scheduler loop sleep when nothing is due"
    )
    min_delay_ms: int = Field(default=10, ge=1, description="Lower clamp for tick delay hints")
    max_delay_ms: int = Field(default=5000, ge=10, description="Upper clamp for tick delay hints")
    event_log_size: int = Field(default=300, ge=10, le=10000, description="Event ring buffer size")


class TimingConfig(BaseModel):
    """Protocol timing constants for one device."""

    poll_interval_moving_ms: int = Field(
        default=250, ge=10, le=5000, description="Status poll interval while moving (ms)"
    )
    poll_interval_idle_ms: int = Field(
        default=1000, ge=50, le=60000, description="Status poll interval when idle (ms)"
    )
    temperature_interval_sec: float = Field(
        default=15.0, gt=0, description="Minimum time between successful temperature reads"
    )
    command_timeout_sec: float = Field(
        default=2.0, gt=0, le=60, description="Reply budget for an ordinary command"
    )
    move_timeout_sec: float = Field(
        default=300.0, gt=0, description="Reply budget for commands that answer at end of motion"
    )
    io_timeout_sec: float = Field(
        default=0.5, gt=0, le=10, description="Short blocking budget for one backend call"
    )
    retry_delay_sec: float = Field(
        default=1.0, gt=0, le=60, description="Tick delay hint while the device is not open"
    )
    max_consecutive_timeouts: int = Field(
        default=0, ge=0, description="Close the connection after N timeouts in a row (0 = never)"
    )


class DeviceConfig(BaseModel):
    """One controlled instrument."""

    name: str = Field(description="Unique device name")
    device_type: DeviceType
    backend: BackendKind
    index: int = Field(default=0, ge=0, description="Backend enumeration index")
    match: Optional[str] = Field(
        default=None,
        description="Stable identity used to re-resolve the backend id (serial number, port name)"
    )
    port: Optional[str] = Field(default=None, description="Serial port for line backends")
    baud: int = Field(default=9600, description="Serial baud rate")
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    description: Optional[str] = None
    auto_connect: bool = Field(default=True, description="Open the device at startup")
    simulator: bool = Field(default=False, description="Use the built-in simulator")
    sdk_binding: Optional[str] = Field(
        default=None,
        description="Import path 'module:attribute' of the vendor SDK binding"
    )
    position_tolerance: Optional[float] = Field(
        default=None, ge=0, description="No-op move threshold in position units"
    )
    min_position: Optional[float] = None
    max_position: Optional[float] = None
    max_increment: Optional[int] = Field(default=None, ge=1)
    step_size: Optional[float] = Field(default=None, gt=0, description="Step size (microns or degrees)")
    timing: TimingConfig = Field(default_factory=TimingConfig)

    @model_validator(mode="after")
    def validate_limits(self):
        """Ensure max_position > min_position when both are set."""
        if (
            self.min_position is not None
            and self.max_position is not None
            and self.max_position <= self.min_position
        ):
            raise ValueError(
                f"max_position ({self.max_position}) must be greater than "
                f"min_position ({self.min_position})"
            )
        return self

    @model_validator(mode="after")
    def validate_backend_matches_type(self):
        """Reject backend kinds that cannot drive the requested device type."""
        allowed = {
            BackendKind.ZWO_EAF: DeviceType.FOCUSER,
            BackendKind.ROBOFOCUS: DeviceType.FOCUSER,
            BackendKind.ZWO_CAA: DeviceType.ROTATOR,
            BackendKind.IOPTRON: DeviceType.TELESCOPE,
        }
        if allowed[self.backend] != self.device_type:
            raise ValueError(
                f"backend {self.backend.value} cannot drive a {self.device_type.value}"
            )
        return self


class AppConfig(BaseModel):
    """Root configuration model."""

    model_config = ConfigDict(extra="forbid")

    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    devices: List[DeviceConfig] = Field(default_factory=list)

    @field_validator("devices")
    @classmethod
    def validate_unique_names(cls, v):
        """Device names are used as ids and must be unique."""
        seen = set()
        for device in v:
            if device.name in seen:
                raise ValueError(f"Duplicate device name: {device.name}")
            seen.add(device.name)
        return v


def default_devices() -> List[DeviceConfig]:
    """Simulated devices written into a freshly created config.json."""
    return [
        DeviceConfig(
            name="eaf-sim", device_type=DeviceType.FOCUSER,
            backend=BackendKind.ZWO_EAF, simulator=True,
        ),
        DeviceConfig(
            name="caa-sim", device_type=DeviceType.ROTATOR,
            backend=BackendKind.ZWO_CAA, simulator=True,
        ),
        DeviceConfig(
            name="ioptron-sim", device_type=DeviceType.TELESCOPE,
            backend=BackendKind.IOPTRON, simulator=True,
        ),
    ]
