from typing import Optional, Union

from pydantic import AliasChoices, BaseModel, Field


class BridgeMessage(BaseModel):
    chat_jid: Optional[str] = Field(default=None, validation_alias=AliasChoices("chat_jid", "chatJid", "remoteJid"))
    sender: Optional[str] = None
    content: Optional[str] = Field(default=None, validation_alias=AliasChoices("content", "message", "text"))
    timestamp: Optional[Union[int, float, str]] = None
    message_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("message_id", "messageId", "id"))
    message_type: Optional[str] = Field(default="text", validation_alias=AliasChoices("message_type", "messageType", "type"))
    media_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("media_url", "mediaUrl", "media_path"))


class WebhookResponse(BaseModel):
    success: bool
    processing_id: Optional[str] = None
    route: Optional[str] = None
    context_effect: Optional[str] = None
    error_kind: Optional[str] = None
    reply: Optional[str] = None
    delivered: bool = False
