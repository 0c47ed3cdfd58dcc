"""
Pydantic models for control frames sent by the streaming server.

Unknown fields are ignored so that the server can extend frames without
breaking older clients.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Frame(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    type: str


class ExchangeStatus(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    connected: bool = False


class WelcomeFrame(_Frame):
    pair: Optional[str] = None
    exchanges: list[ExchangeStatus] = Field(default_factory=list)
    timestamp: Optional[int] = None
    admin: Any = None  # any truthy value grants admin


class PairFrame(_Frame):
    pair: str


class ExchangeFrame(_Frame):
    """exchange_connected / exchange_disconnected"""

    id: str


class ExchangeErrorFrame(_Frame):
    id: str
    message: Optional[str] = None
