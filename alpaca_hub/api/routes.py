"""
ASCOM Alpaca API endpoints.

GET members read the device snapshot and never touch the wire. PUT members
queue a command and wait (bounded) for its outcome, so validation errors and
device refusals come back in the same response. Moves and slews are
asynchronous in the Alpaca sense: the command resolves once the motion has
been started, IsMoving/Slewing report its progress.
"""

import logging
import time
from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request

from alpaca_hub import __version__
from alpaca_hub.api.error_mapper import outcome_to_exception
from alpaca_hub.api.models import AlpacaResponse, make_response
from alpaca_hub.core.device import Device
from alpaca_hub.core.state import Command, CommandOutcome, PropertySnapshot
from alpaca_hub.hub import Hub
from alpaca_hub.utils.exceptions import (
    AlpacaHubError,
    CommandTimeoutError,
    DriverError,
    NotConnectedError,
    NotImplementedByDeviceError,
    UnknownDeviceError,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["alpaca"])

# Upper bound on how long a PUT waits for its command
REQUEST_WAIT_SEC = 10.0
# How long PUT Connected=true waits for the device to open
CONNECT_WAIT_SEC = 5.0

INTERFACE_VERSIONS = {"focuser": 3, "rotator": 3, "telescope": 3}


def get_hub(request: Request) -> Hub:
    """Dependency to get the hub from app.state."""
    hub = getattr(request.app.state, "hub", None)
    if hub is None:
        raise RuntimeError("Hub not initialized")
    return hub


# Helper to extract ClientTransactionID
def get_client_id(ClientTransactionID: int = Query(0)) -> int:
    """Extract client transaction ID from query params."""
    return ClientTransactionID


def get_client_id_form(ClientTransactionID: int = Form(0)) -> int:
    """Extract client transaction ID from form data."""
    return ClientTransactionID


def _lookup(hub: Hub, device_type: str, device_number: int) -> Device:
    try:
        return hub.get(device_type, device_number)
    except UnknownDeviceError as e:
        # Alpaca reports unknown devices at the HTTP level
        raise HTTPException(status_code=400, detail=str(e))


def _respond(client_id: int, action: Callable[[], Any]) -> AlpacaResponse:
    try:
        value = action()
    except AlpacaHubError as e:
        logger.debug(f"Request failed: {e}")
        return make_response(None, client_id, error=e)
    return make_response(value, client_id)


def _snapshot(device: Device) -> PropertySnapshot:
    if not device.connected:
        raise NotConnectedError(f"{device.name} is not connected")
    return device.get_snapshot()


def _value(device: Device, attr: str, label: str) -> Any:
    value = getattr(_snapshot(device), attr)
    if value is None:
        raise DriverError(f"{label} not yet read from {device.name}")
    return value


def _complete(device: Device, command: Command) -> None:
    """Wait for a queued command and raise its failure, if any."""
    outcome = device.wait_for(command, min(command.timeout, REQUEST_WAIT_SEC) + 1.0)
    if not command.done:
        raise CommandTimeoutError(f"{device.name}: {command.name} still pending")
    if outcome != CommandOutcome.SUCCESS:
        raise outcome_to_exception(outcome, command.error)


def _await_connection(device: Device, timeout: float = CONNECT_WAIT_SEC) -> None:
    deadline = time.monotonic() + timeout
    while not device.connected:
        if time.monotonic() >= deadline:
            last = device.attempts[-1].message if device.attempts else "no attempt yet"
            raise NotConnectedError(f"{device.name} did not connect: {last}")
        time.sleep(0.05)


# --- common members -------------------------------------------------------

@router.get("/{device_type}/{device_number}/connected", response_model=AlpacaResponse)
async def get_connected(
    device_type: str,
    device_number: int,
    client_id: int = Depends(get_client_id),
    hub: Hub = Depends(get_hub),
):
    """Get connection status."""
    device = _lookup(hub, device_type, device_number)
    return make_response(device.connected, client_id)


@router.get("/{device_type}/{device_number}/connecting", response_model=AlpacaResponse)
async def get_connecting(
    device_type: str,
    device_number: int,
    client_id: int = Depends(get_client_id),
    hub: Hub = Depends(get_hub),
):
    """True while an enabled device is not yet open."""
    device = _lookup(hub, device_type, device_number)
    return make_response(device.enabled and not device.connected, client_id)


@router.put("/{device_type}/{device_number}/connected", response_model=AlpacaResponse)
def put_connected(
    device_type: str,
    device_number: int,
    Connected: bool = Form(...),
    client_id: int = Depends(get_client_id_form),
    hub: Hub = Depends(get_hub),
):
    """Connect or disconnect a device."""
    device = _lookup(hub, device_type, device_number)

    def action():
        hub.set_enabled(device.name, Connected)
        if Connected:
            _await_connection(device)
        logger.info(f"{device.name} {'connected' if Connected else 'disconnected'} via API")

    return _respond(client_id, action)


@router.get("/{device_type}/{device_number}/name", response_model=AlpacaResponse)
async def get_name(
    device_type: str,
    device_number: int,
    client_id: int = Depends(get_client_id),
    hub: Hub = Depends(get_hub),
):
    """Get device name."""
    device = _lookup(hub, device_type, device_number)
    return make_response(device.name, client_id)


@router.get("/{device_type}/{device_number}/description", response_model=AlpacaResponse)
async def get_description(
    device_type: str,
    device_number: int,
    client_id: int = Depends(get_client_id),
    hub: Hub = Depends(get_hub),
):
    """Get device description."""
    device = _lookup(hub, device_type, device_number)
    description = device.config.description or f"{device.profile.manufacturer} {device.profile.model}"
    return make_response(description, client_id)


@router.get("/{device_type}/{device_number}/driverinfo", response_model=AlpacaResponse)
async def get_driverinfo(
    device_type: str,
    device_number: int,
    client_id: int = Depends(get_client_id),
    hub: Hub = Depends(get_hub),
):
    """Get driver information."""
    device = _lookup(hub, device_type, device_number)
    info = f"Alpaca Hub {device.profile.backend_kind} driver"
    return make_response(info, client_id)


@router.get("/{device_type}/{device_number}/driverversion", response_model=AlpacaResponse)
async def get_driverversion(
    device_type: str,
    device_number: int,
    client_id: int = Depends(get_client_id),
    hub: Hub = Depends(get_hub),
):
    """Get driver version."""
    _lookup(hub, device_type, device_number)
    return make_response(__version__, client_id)


@router.get("/{device_type}/{device_number}/interfaceversion", response_model=AlpacaResponse)
async def get_interfaceversion(
    device_type: str,
    device_number: int,
    client_id: int = Depends(get_client_id),
    hub: Hub = Depends(get_hub),
):
    """Get ASCOM interface version."""
    device = _lookup(hub, device_type, device_number)
    return make_response(INTERFACE_VERSIONS[device.device_type], client_id)


@router.get("/{device_type}/{device_number}/supportedactions", response_model=AlpacaResponse)
async def get_supportedactions(
    device_type: str,
    device_number: int,
    client_id: int = Depends(get_client_id),
    hub: Hub = Depends(get_hub),
):
    """Get list of supported actions (empty)."""
    _lookup(hub, device_type, device_number)
    return make_response([], client_id)


# --- focuser ----------------------------------------------------------------

def _focuser(hub: Hub, device_number: int) -> Device:
    return _lookup(hub, "focuser", device_number)


def _max_step(device: Device) -> int:
    if device.config.max_position is not None:
        return int(device.config.max_position)
    snapshot = _snapshot(device)
    value = snapshot.max_step if snapshot.max_step is not None else snapshot.max_position
    if value is None:
        raise DriverError(f"MaxStep not yet read from {device.name}")
    return int(value)


@router.get("/focuser/{device_number}/absolute", response_model=AlpacaResponse)
async def get_absolute(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    """Return True (supports absolute positioning)."""
    _focuser(hub, device_number)
    return make_response(True, client_id)


@router.get("/focuser/{device_number}/ismoving", response_model=AlpacaResponse)
async def get_focuser_ismoving(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    """Check if focuser is moving."""
    device = _focuser(hub, device_number)
    return _respond(client_id, lambda: _snapshot(device).is_moving)


@router.get("/focuser/{device_number}/position", response_model=AlpacaResponse)
async def get_focuser_position(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    """Get current position."""
    device = _focuser(hub, device_number)
    return _respond(client_id, lambda: int(_value(device, "position", "Position")))


@router.get("/focuser/{device_number}/maxstep", response_model=AlpacaResponse)
async def get_maxstep(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    """Get maximum position."""
    device = _focuser(hub, device_number)
    return _respond(client_id, lambda: _max_step(device))


@router.get("/focuser/{device_number}/maxincrement", response_model=AlpacaResponse)
async def get_maxincrement(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    """Get maximum single move increment."""
    device = _focuser(hub, device_number)
    if device.config.max_increment is not None:
        return make_response(device.config.max_increment, client_id)
    return _respond(client_id, lambda: _max_step(device))


@router.get("/focuser/{device_number}/stepsize", response_model=AlpacaResponse)
async def get_focuser_stepsize(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    """Get step size in microns."""
    device = _focuser(hub, device_number)

    def action():
        if device.config.step_size is None:
            raise NotImplementedByDeviceError("StepSize is not configured")
        return device.config.step_size

    return _respond(client_id, action)


@router.get("/focuser/{device_number}/temperature", response_model=AlpacaResponse)
async def get_temperature(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    """Get temperature in Celsius."""
    device = _focuser(hub, device_number)

    def action():
        if not device.profile.has_temperature:
            raise NotImplementedByDeviceError("Temperature is not available")
        return _value(device, "temperature", "Temperature")

    return _respond(client_id, action)


@router.get("/focuser/{device_number}/tempcomp", response_model=AlpacaResponse)
async def get_tempcomp(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    """Get temperature compensation status (always False)."""
    _focuser(hub, device_number)
    return make_response(False, client_id)


@router.get("/focuser/{device_number}/tempcompavailable", response_model=AlpacaResponse)
async def get_tempcompavailable(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    """Check if temperature compensation is available (always False)."""
    _focuser(hub, device_number)
    return make_response(False, client_id)


@router.put("/focuser/{device_number}/tempcomp", response_model=AlpacaResponse)
def put_tempcomp(
    device_number: int,
    TempComp: bool = Form(...),
    client_id: int = Depends(get_client_id_form),
    hub: Hub = Depends(get_hub),
):
    """Temperature compensation cannot be enabled."""
    _focuser(hub, device_number)

    def action():
        if TempComp:
            raise NotImplementedByDeviceError("Temperature compensation is not available")

    return _respond(client_id, action)


@router.put("/focuser/{device_number}/move", response_model=AlpacaResponse)
def put_focuser_move(
    device_number: int,
    Position: str = Form(...),
    client_id: int = Depends(get_client_id_form),
    hub: Hub = Depends(get_hub),
):
    """Move to absolute position (non-blocking)."""
    device = _focuser(hub, device_number)

    def action():
        _complete(device, hub.request_move(device.name, Position))
        logger.info(f"{device.name}: move command target={Position}")

    return _respond(client_id, action)


@router.put("/focuser/{device_number}/halt", response_model=AlpacaResponse)
def put_focuser_halt(device_number: int, client_id: int = Depends(get_client_id_form), hub: Hub = Depends(get_hub)):
    """Stop movement immediately."""
    device = _focuser(hub, device_number)
    return _respond(client_id, lambda: _complete(device, hub.request_halt(device.name)))


# Backlash endpoints (vendor extension)

@router.get("/focuser/{device_number}/backlash", response_model=AlpacaResponse)
async def get_backlash(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    """
    Get backlash compensation value.

    Robofocus reports a signed value:
    - Positive = compensation on OUT motion
    - Negative = compensation on IN motion
    """
    device = _focuser(hub, device_number)
    return _respond(client_id, lambda: _value(device, "backlash", "Backlash"))


@router.put("/focuser/{device_number}/backlash", response_model=AlpacaResponse)
def put_backlash(
    device_number: int,
    Backlash: str = Form(...),
    client_id: int = Depends(get_client_id_form),
    hub: Hub = Depends(get_hub),
):
    """Set backlash compensation."""
    device = _focuser(hub, device_number)
    return _respond(client_id, lambda: _complete(device, hub.request_write(device.name, "backlash", Backlash)))


# --- rotator ----------------------------------------------------------------

def _rotator(hub: Hub, device_number: int) -> Device:
    return _lookup(hub, "rotator", device_number)


@router.get("/rotator/{device_number}/canreverse", response_model=AlpacaResponse)
async def get_canreverse(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    device = _rotator(hub, device_number)
    return make_response(device.profile.can_reverse, client_id)


@router.get("/rotator/{device_number}/ismoving", response_model=AlpacaResponse)
async def get_rotator_ismoving(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    device = _rotator(hub, device_number)
    return _respond(client_id, lambda: _snapshot(device).is_moving)


@router.get("/rotator/{device_number}/position", response_model=AlpacaResponse)
async def get_rotator_position(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    device = _rotator(hub, device_number)
    return _respond(client_id, lambda: _value(device, "position", "Position"))


@router.get("/rotator/{device_number}/mechanicalposition", response_model=AlpacaResponse)
async def get_mechanicalposition(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    device = _rotator(hub, device_number)

    def action():
        snapshot = _snapshot(device)
        value = snapshot.mechanical_position if snapshot.mechanical_position is not None else snapshot.position
        if value is None:
            raise DriverError(f"MechanicalPosition not yet read from {device.name}")
        return value

    return _respond(client_id, action)


@router.get("/rotator/{device_number}/targetposition", response_model=AlpacaResponse)
async def get_targetposition(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    device = _rotator(hub, device_number)

    def action():
        snapshot = _snapshot(device)
        value = snapshot.target_position if snapshot.target_position is not None else snapshot.position
        if value is None:
            raise DriverError(f"TargetPosition not yet read from {device.name}")
        return value

    return _respond(client_id, action)


@router.get("/rotator/{device_number}/stepsize", response_model=AlpacaResponse)
async def get_rotator_stepsize(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    device = _rotator(hub, device_number)
    step = device.config.step_size or getattr(device.profile, "STEP_SIZE", None)
    if step is None:
        return make_response(None, client_id, error=NotImplementedByDeviceError("StepSize is not available"))
    return make_response(step, client_id)


@router.get("/rotator/{device_number}/reverse", response_model=AlpacaResponse)
async def get_reverse(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    device = _rotator(hub, device_number)
    return _respond(client_id, lambda: bool(_snapshot(device).reverse))


@router.put("/rotator/{device_number}/reverse", response_model=AlpacaResponse)
def put_reverse(
    device_number: int,
    Reverse: bool = Form(...),
    client_id: int = Depends(get_client_id_form),
    hub: Hub = Depends(get_hub),
):
    device = _rotator(hub, device_number)
    return _respond(client_id, lambda: _complete(device, hub.request_write(device.name, "reverse", Reverse)))


def _rotator_move(hub: Hub, device: Device, target: Any) -> None:
    _complete(device, hub.request_move(device.name, target))
    logger.info(f"{device.name}: move command target={target}")


@router.put("/rotator/{device_number}/move", response_model=AlpacaResponse)
def put_rotator_move(
    device_number: int,
    Position: float = Form(...),
    client_id: int = Depends(get_client_id_form),
    hub: Hub = Depends(get_hub),
):
    """Move relative to the current position."""
    device = _rotator(hub, device_number)
    return _respond(
        client_id,
        lambda: _rotator_move(hub, device, _value(device, "position", "Position") + Position),
    )


@router.put("/rotator/{device_number}/moveabsolute", response_model=AlpacaResponse)
def put_rotator_moveabsolute(
    device_number: int,
    Position: str = Form(...),
    client_id: int = Depends(get_client_id_form),
    hub: Hub = Depends(get_hub),
):
    device = _rotator(hub, device_number)
    return _respond(client_id, lambda: _rotator_move(hub, device, Position))


@router.put("/rotator/{device_number}/movemechanical", response_model=AlpacaResponse)
def put_rotator_movemechanical(
    device_number: int,
    Position: str = Form(...),
    client_id: int = Depends(get_client_id_form),
    hub: Hub = Depends(get_hub),
):
    # No sync offset: mechanical and sky angles coincide
    device = _rotator(hub, device_number)
    return _respond(client_id, lambda: _rotator_move(hub, device, Position))


@router.put("/rotator/{device_number}/halt", response_model=AlpacaResponse)
def put_rotator_halt(device_number: int, client_id: int = Depends(get_client_id_form), hub: Hub = Depends(get_hub)):
    device = _rotator(hub, device_number)
    return _respond(client_id, lambda: _complete(device, hub.request_halt(device.name)))


# --- telescope --------------------------------------------------------------

def _telescope(hub: Hub, device_number: int) -> Device:
    return _lookup(hub, "telescope", device_number)


_TELESCOPE_PROPERTIES = {
    "rightascension": ("right_ascension", "RightAscension"),
    "declination": ("declination", "Declination"),
    "tracking": ("tracking", "Tracking"),
    "atpark": ("at_park", "AtPark"),
    "athome": ("at_home", "AtHome"),
    "sideofpier": ("side_of_pier", "SideOfPier"),
    "sitelatitude": ("latitude", "SiteLatitude"),
    "sitelongitude": ("longitude", "SiteLongitude"),
}

_TELESCOPE_CAPABILITIES = {
    "canslew": False,
    "canslewasync": True,
    "canpark": True,
    "canunpark": True,
    "canfindhome": True,
    "cansettracking": True,
    "cansync": False,
    "canpulseguide": False,
}


def _telescope_property(member: str):
    attr, label = _TELESCOPE_PROPERTIES[member]

    async def endpoint(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
        device = _telescope(hub, device_number)
        return _respond(client_id, lambda: _value(device, attr, label))

    endpoint.__name__ = f"get_{member}"
    endpoint.__doc__ = f"Get {label}."
    return endpoint


def _telescope_capability(member: str):
    value = _TELESCOPE_CAPABILITIES[member]

    async def endpoint(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
        _telescope(hub, device_number)
        return make_response(value, client_id)

    endpoint.__name__ = f"get_{member}"
    return endpoint


for _member in _TELESCOPE_PROPERTIES:
    router.add_api_route(
        f"/telescope/{{device_number}}/{_member}",
        _telescope_property(_member),
        methods=["GET"],
        response_model=AlpacaResponse,
    )

for _member in _TELESCOPE_CAPABILITIES:
    router.add_api_route(
        f"/telescope/{{device_number}}/{_member}",
        _telescope_capability(_member),
        methods=["GET"],
        response_model=AlpacaResponse,
    )


@router.get("/telescope/{device_number}/slewing", response_model=AlpacaResponse)
async def get_slewing(device_number: int, client_id: int = Depends(get_client_id), hub: Hub = Depends(get_hub)):
    device = _telescope(hub, device_number)
    return _respond(client_id, lambda: _snapshot(device).slewing)


@router.put("/telescope/{device_number}/slewtocoordinatesasync", response_model=AlpacaResponse)
def put_slewtocoordinatesasync(
    device_number: int,
    RightAscension: str = Form(...),
    Declination: str = Form(...),
    client_id: int = Depends(get_client_id_form),
    hub: Hub = Depends(get_hub),
):
    """Start a slew; Slewing reports its progress."""
    device = _telescope(hub, device_number)

    def action():
        _complete(device, hub.request_move(device.name, (RightAscension, Declination)))
        logger.info(f"{device.name}: slew to RA {RightAscension} Dec {Declination}")

    return _respond(client_id, action)


@router.put("/telescope/{device_number}/abortslew", response_model=AlpacaResponse)
def put_abortslew(device_number: int, client_id: int = Depends(get_client_id_form), hub: Hub = Depends(get_hub)):
    device = _telescope(hub, device_number)
    return _respond(client_id, lambda: _complete(device, hub.request_halt(device.name)))


@router.put("/telescope/{device_number}/tracking", response_model=AlpacaResponse)
def put_tracking(
    device_number: int,
    Tracking: bool = Form(...),
    client_id: int = Depends(get_client_id_form),
    hub: Hub = Depends(get_hub),
):
    device = _telescope(hub, device_number)
    return _respond(client_id, lambda: _complete(device, hub.request_write(device.name, "tracking", Tracking)))


def _telescope_write(hub: Hub, device: Device, key: str, value: Optional[bool]) -> None:
    _complete(device, hub.request_write(device.name, key, value))
    logger.info(f"{device.name}: {key} {value}")


@router.put("/telescope/{device_number}/park", response_model=AlpacaResponse)
def put_park(device_number: int, client_id: int = Depends(get_client_id_form), hub: Hub = Depends(get_hub)):
    device = _telescope(hub, device_number)
    return _respond(client_id, lambda: _telescope_write(hub, device, "park", True))


@router.put("/telescope/{device_number}/unpark", response_model=AlpacaResponse)
def put_unpark(device_number: int, client_id: int = Depends(get_client_id_form), hub: Hub = Depends(get_hub)):
    device = _telescope(hub, device_number)
    return _respond(client_id, lambda: _telescope_write(hub, device, "park", False))


@router.put("/telescope/{device_number}/findhome", response_model=AlpacaResponse)
def put_findhome(device_number: int, client_id: int = Depends(get_client_id_form), hub: Hub = Depends(get_hub)):
    device = _telescope(hub, device_number)
    return _respond(client_id, lambda: _telescope_write(hub, device, "home", True))
