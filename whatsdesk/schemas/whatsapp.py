from typing import Optional, Union

from pydantic import BaseModel


class ConnectionStatusResponse(BaseModel):
    qr: Optional[str] = None
    qr_at: Optional[float] = None
    connection_state: str
    connected: bool
    stable_connected: bool
    last_connected_at: Optional[float] = None
    last_disconnected_at: Optional[float] = None
    last_disconnect_code: Optional[Union[int, str]] = None
    last_disconnect_reason: Optional[str] = None
    reconnect_attempts: int = 0
    reconnect_at: Optional[float] = None
    consecutive_conflicts: int = 0


class QrResetRequest(BaseModel):
    allow_when_connected: bool = False
