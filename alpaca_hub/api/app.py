"""
FastAPI application factory.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from alpaca_hub import __version__
from alpaca_hub.api.models import make_response
from alpaca_hub.api.routes import router as device_router
from alpaca_hub.backends.serial_ports import list_available_ports
from alpaca_hub.config.models import AppConfig
from alpaca_hub.hub import Hub


logger = logging.getLogger(__name__)


async def _client_transaction_id(request: Request) -> int:
    """ClientTransactionID from the query string (GET) or form body (PUT)."""
    try:
        if request.method == "PUT":
            form_data = await request.form()
            return int(form_data.get("ClientTransactionID", 0))
        return int(request.query_params.get("ClientTransactionID", 0))
    except (ValueError, TypeError):
        return 0


def create_app(config: AppConfig, hub: Hub) -> FastAPI:
    """
    Create FastAPI application instance.

    Args:
        config: Application configuration.
        hub: Device hub served by the routes.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="Alpaca Hub",
        description="ASCOM Alpaca server for ZWO EAF/CAA, iOptron and Robofocus devices",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.hub = hub
    app.state.config = config

    # CORS middleware (allow all origins for Alpaca compatibility)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch all unhandled exceptions and return Alpaca error response."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)

        response = make_response(
            value=None,
            client_id=await _client_transaction_id(request),
            error=exc
        )

        return JSONResponse(
            status_code=200,  # Alpaca always returns 200
            content=response.model_dump()
        )

    # Management API endpoints (required for client discovery)
    @app.get("/management/apiversions")
    async def get_api_versions(ClientTransactionID: int = Query(0)):
        """Return supported Alpaca API versions."""
        return make_response([1], ClientTransactionID).model_dump()

    @app.get("/management/v1/configureddevices")
    async def get_configured_devices(ClientTransactionID: int = Query(0)):
        """Return list of configured devices."""
        devices = [
            {
                "DeviceName": d["DeviceName"],
                "DeviceType": d["DeviceType"],
                "DeviceNumber": d["DeviceNumber"],
                "UniqueID": d["UniqueID"],
            }
            for d in hub.configured_devices()
        ]
        return make_response(devices, ClientTransactionID).model_dump()

    @app.get("/management/v1/description")
    async def get_server_description(ClientTransactionID: int = Query(0)):
        """Return server description."""
        return make_response(
            {
                "ServerName": config.server.server_name,
                "Manufacturer": "Alpaca Hub",
                "ManufacturerVersion": __version__,
                "Location": config.server.location,
            },
            ClientTransactionID,
        ).model_dump()

    # Hub management endpoints (JSON only)
    @app.get("/api/v1/management/devices")
    async def get_device_states():
        """Connection state, last attempts and snapshot of every device."""
        return {
            "Value": [
                {
                    **device.describe(),
                    "OpenFailures": device.open_failures,
                    "Attempts": [
                        {
                            "backend_id": None if a.backend_id is None else str(a.backend_id),
                            "result_code": a.result_code,
                            "timestamp": a.timestamp,
                            "message": a.message,
                        }
                        for a in device.attempts
                    ],
                    "Snapshot": device.get_snapshot().to_dict(),
                }
                for device in hub.devices
            ]
        }

    @app.get("/api/v1/management/events")
    async def get_events(limit: int = Query(100, ge=1, le=10000), device: Optional[str] = None):
        """Recent connection and command events, oldest first."""
        return {
            "Value": hub.events.get_events(limit=limit, device=device),
            "Stats": hub.events.get_stats(),
        }

    @app.delete("/api/v1/management/events")
    async def clear_events():
        hub.events.clear()
        return {"Value": None}

    @app.get("/api/v1/management/ports")
    async def get_available_ports():
        """List all available COM ports on the system."""
        ports = list_available_ports(include_bluetooth=True)
        return {
            "Value": [p.to_dict() for p in ports]
        }

    app.include_router(device_router)

    logger.info("FastAPI application created")
    return app
