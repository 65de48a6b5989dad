"""
Pydantic models for ASCOM Alpaca API responses.
"""

import itertools
import threading
from typing import Any, Optional

from pydantic import BaseModel, Field


# Global server transaction ID counter (thread-safe)
_transaction_counter = itertools.count(1)
_transaction_lock = threading.Lock()


def get_next_transaction_id() -> int:
    """Get next server transaction ID (thread-safe)."""
    with _transaction_lock:
        return next(_transaction_counter)


class AlpacaResponse(BaseModel):
    """
    Standard ASCOM Alpaca response envelope.

    All device endpoints return this format.
    """
    Value: Any = Field(None, description="Response value (type varies by endpoint)")
    ClientTransactionID: int = Field(0, description="Client transaction ID (echo from request)")
    ServerTransactionID: int = Field(description="Server transaction ID (auto-incremented)")
    ErrorNumber: int = Field(0, description="Error code (0 = success, non-zero = error)")
    ErrorMessage: str = Field("", description="Error message (empty string if no error)")


def make_response(
    value: Any,
    client_id: int = 0,
    server_id: Optional[int] = None,
    error: Optional[Exception] = None
) -> AlpacaResponse:
    """
    Helper to create Alpaca response.

    Args:
        value: Response value (None if error).
        client_id: Client transaction ID.
        server_id: Server transaction ID; the next one is taken if omitted.
        error: Exception (if any).

    Returns:
        AlpacaResponse instance.
    """
    if server_id is None:
        server_id = get_next_transaction_id()

    if error is None:
        return AlpacaResponse(
            Value=value,
            ClientTransactionID=client_id,
            ServerTransactionID=server_id,
        )

    from alpaca_hub.api.error_mapper import map_exception_to_alpaca
    error_number, error_message = map_exception_to_alpaca(error)

    return AlpacaResponse(
        Value=None,
        ClientTransactionID=client_id,
        ServerTransactionID=server_id,
        ErrorNumber=error_number,
        ErrorMessage=error_message
    )
