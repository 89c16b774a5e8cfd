from datetime import datetime
from typing import Optional, Union

from fastapi import APIRouter, Depends, Request

from drasbot.logging_config import get_logger
from drasbot.schemas.webhook import BridgeMessage, WebhookResponse
from drasbot.services.container import Services
from drasbot.services.domain import RawMessage

logger = get_logger("webhook")

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


def _coerce_timestamp(value: Union[int, float, str, None]) -> Union[datetime, float, None]:
    """Bridges send epoch numbers or ISO strings."""
    if value is None or isinstance(value, (int, float)):
        return value
    text = value.strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None


def to_raw_message(body: BridgeMessage) -> RawMessage:
    sender: Optional[str] = body.sender or body.chat_jid or ""
    return RawMessage(
        sender=sender,
        text=body.content,
        timestamp=_coerce_timestamp(body.timestamp),
        message_type=body.message_type or "text",
        media_url=body.media_url,
        message_id=body.message_id,
        chat_id=body.chat_jid,
    )


@router.post("/webhook/whatsapp", response_model=WebhookResponse)
async def whatsapp_webhook(body: BridgeMessage, services: Services = Depends(get_services)):
    """Receive one inbound message from the WhatsApp bridge."""
    result = await services.pipeline.process(to_raw_message(body))
    return WebhookResponse(
        success=result.success,
        processing_id=result.processing_id,
        route=result.route.value,
        context_effect=result.context_effect.value,
        error_kind=result.error_kind.value if result.error_kind else None,
        reply=result.reply_text,
        delivered=result.delivered,
    )
