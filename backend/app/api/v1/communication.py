"""
FastAPI route: Outbound communication endpoints.

Provides endpoints to:
    POST /api/v1/communication/email          — send an email
    POST /api/v1/communication/whatsapp       — send a WhatsApp message
    POST /api/v1/communication/telegram       — send a Telegram message
    POST /api/v1/communication/sms            — send an SMS
    POST /api/v1/communication/send           — unified multi-channel send
    GET  /api/v1/communication/stats          — delivery statistics
    GET  /api/v1/communication/failures       — recent failed deliveries
    POST /api/v1/communication/ledger/compact — drop records past retention
    GET  /api/v1/communication/providers      — cached provider reachability

Request bodies are only shaped here; the dispatcher's validator owns the
field rules so both call shapes fail the same way.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from backend.app.core.config import settings
from backend.app.dispatch.dispatcher import Dispatcher
from backend.app.dispatch.ledger import DEFAULT_TIME_RANGE
from backend.app.dispatch.models import Channel, DispatchResult
from backend.app.dispatch.provider_cache import ProviderStatusCache

router = APIRouter(prefix="/api/v1/communication", tags=["communication"])


# ---------------------------------------------------------------------------
# Request / Response Schemas
# ---------------------------------------------------------------------------

class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[Union[str, int]] = Field(None, alias="userId", examples=["U-1042"])
    type: Optional[str] = Field(None, description="Message variant")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class EmailSendRequest(_Payload):
    to: Optional[str] = Field(None, examples=["ops@example.com"])
    subject: Optional[str] = Field(None, examples=["Order #42 shipped"])
    body: Optional[str] = Field(None, examples=["Your order left the warehouse."])


class PhoneSendRequest(_Payload):
    """WhatsApp and SMS share the same shape."""
    to: Optional[str] = Field(None, examples=["+919876543210"])
    message: Optional[str] = Field(None, examples=["Out for delivery today."])


class TelegramSendRequest(_Payload):
    chat_id: Optional[Union[str, int]] = Field(None, alias="chatId", examples=[123456789])
    message: Optional[str] = Field(None, examples=["Pickup confirmed."])


class UnifiedSendRequest(_Payload):
    channel: Optional[str] = Field(None, examples=["sms"])
    to: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    message: Optional[str] = None
    chat_id: Optional[Union[str, int]] = Field(None, alias="chatId")


class SendResponse(BaseModel):
    success: bool
    channel: str
    message_id: str


class CompactResponse(BaseModel):
    removed: int
    retention_days: int


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def get_provider_cache(request: Request) -> ProviderStatusCache:
    return request.app.state.provider_cache


def _to_response(result: DispatchResult) -> SendResponse:
    return SendResponse(**result.to_dict())


# ---------------------------------------------------------------------------
# Send endpoints
# ---------------------------------------------------------------------------

@router.post("/email", response_model=SendResponse, summary="Send an email")
async def send_email(
    body: EmailSendRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return _to_response(await dispatcher.send(Channel.EMAIL, body.to_payload()))


@router.post("/whatsapp", response_model=SendResponse, summary="Send a WhatsApp message")
async def send_whatsapp(
    body: PhoneSendRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return _to_response(await dispatcher.send(Channel.WHATSAPP, body.to_payload()))


@router.post("/telegram", response_model=SendResponse, summary="Send a Telegram message")
async def send_telegram(
    body: TelegramSendRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return _to_response(await dispatcher.send(Channel.TELEGRAM, body.to_payload()))


@router.post("/sms", response_model=SendResponse, summary="Send an SMS")
async def send_sms(
    body: PhoneSendRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return _to_response(await dispatcher.send(Channel.SMS, body.to_payload()))


@router.post(
    "/send",
    response_model=SendResponse,
    summary="Unified send",
    description="Send on the channel named in the body, with that channel's rules.",
)
async def send_unified(
    body: UnifiedSendRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return _to_response(await dispatcher.send_unified(body.to_payload()))


# ---------------------------------------------------------------------------
# Ledger endpoints
# ---------------------------------------------------------------------------

@router.get("/stats", summary="Delivery statistics")
async def delivery_stats(
    time_range: str = Query(DEFAULT_TIME_RANGE, description="1h | 24h | 7d | 30d"),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    stats = await dispatcher.ledger.stats(time_range)
    return stats.to_dict()


@router.get("/failures", summary="Recent failed deliveries")
async def recent_failures(
    limit: int = Query(10, ge=1, le=100),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> List[Dict[str, Any]]:
    return [r.to_dict() for r in await dispatcher.ledger.recent_failures(limit)]


@router.post("/ledger/compact", response_model=CompactResponse, summary="Apply ledger retention")
async def compact_ledger(dispatcher: Dispatcher = Depends(get_dispatcher)):
    removed = await dispatcher.ledger.compact()
    return CompactResponse(
        removed=removed,
        retention_days=dispatcher.ledger.config.retention_days,
    )


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

@router.get("/providers", summary="Provider reachability (cached)")
async def provider_status(
    dispatcher: Dispatcher = Depends(get_dispatcher),
    cache: ProviderStatusCache = Depends(get_provider_cache),
):
    statuses = await cache.check_all(dispatcher.transports)
    return {
        "transport_mode": settings.TRANSPORT_MODE,
        "cache_ttl_seconds": cache.ttl_seconds,
        "providers": [s.to_dict() for s in statuses.values()],
    }
