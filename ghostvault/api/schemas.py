"""
Pydantic schemas for the internal RPC envelope and method parameters.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class APIResponse(BaseModel):
    """Base API response model."""
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class SuccessResponse(APIResponse):
    """Success response model."""
    data: Optional[Any] = None


class ErrorResponse(APIResponse):
    """Error response model."""
    success: bool = False
    error_code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class HealthResponse(BaseModel):
    ready: bool
    daemon_ready: bool
    reason: Optional[str] = None


def create_success_response(data: Any = None, message: Optional[str] = None) -> SuccessResponse:
    """Create a success response."""
    return SuccessResponse(data=data, message=message)


def create_error_response(
    message: str,
    error_code: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> ErrorResponse:
    """Create an error response."""
    return ErrorResponse(message=message, error_code=error_code, details=details)


# Method parameters

class RPCParams(BaseModel):
    model_config = ConfigDict(extra="forbid")


class NoParams(RPCParams):
    pass


class NewBlockParams(RPCParams):
    block_hash: str = Field(min_length=64, max_length=64)


class NewWalletTxParams(RPCParams):
    txid: str = Field(min_length=64, max_length=64)
    wallet: str


class NewRemoteBlockParams(RPCParams):
    block_hash: str = Field(min_length=64, max_length=64)
    height: int = Field(ge=0)


class RewardModeParams(RPCParams):
    mode: str
    address: Optional[str] = None


class PayoutMinParams(RPCParams):
    min_payout: float = Field(ge=0)


class RewardIntervalParams(RPCParams):
    interval: str


class TelegramBotParams(RPCParams):
    token: str
    user: str


class BotAnnounceParams(RPCParams):
    msg_type: str
    enabled: bool


class AddressParams(RPCParams):
    address: str


class TimezoneParams(RPCParams):
    timezone: str


class ChartParams(RPCParams):
    start: int = Field(default=0, ge=0)
    end: int = Field(ge=0)


class BarChartParams(ChartParams):
    division: str = "day"


class ImportWalletParams(RPCParams):
    mnemonic: str
    name: str
