from pydantic import BaseModel
from typing import Optional
from datetime import datetime


class ConnectRequest(BaseModel):
    client_id: str
    client_secret: str
    # Either a fresh grant code or an existing refresh token.
    code: str
    datacenter: str = "us"
    organization_id: Optional[str] = None


class ConnectResponse(BaseModel):
    connected: bool
    mode: str
    organization_id: Optional[str] = None


class ConnectionStatus(BaseModel):
    configured: bool
    datacenter: Optional[str] = None
    organization_id: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None
    refresh_error: Optional[str] = None


class ConnectionTestResponse(BaseModel):
    connected: bool
    organization_id: Optional[str] = None
    error: Optional[str] = None
