"""
message_types.py — Per-channel message type rules.

One pure function per channel maps (variant, content) to a fixed
MessageType. The dispatcher calls ``determine_message_type`` exactly once
per request, before the transport runs, so success and failure events of
the same request always carry the same category.

    Channel    Input checked          Rule
    ────────   ────────────────────   ────────────────────────────────────
    email      subject                contains "Order" → Order Update, else Report
    whatsapp   variant                "delivery"       → Delivery Alert, else CRM Alert
    telegram   variant                "notification"   → Quick Notification, else Command Response
    sms        variant                "fallback"       → Fallback Update, else Urgent Update
"""

from __future__ import annotations

from typing import Callable, Dict

from backend.app.dispatch.models import Channel, MessageType, SendRequest

ORDER_KEYWORD = "Order"


def email_message_type(variant: str, content: str) -> MessageType:
    """``content`` is the email subject."""
    if ORDER_KEYWORD in content:
        return MessageType.ORDER_UPDATE
    return MessageType.REPORT


def whatsapp_message_type(variant: str, content: str) -> MessageType:
    if variant == "delivery":
        return MessageType.DELIVERY_ALERT
    return MessageType.CRM_ALERT


def telegram_message_type(variant: str, content: str) -> MessageType:
    if variant == "notification":
        return MessageType.QUICK_NOTIFICATION
    return MessageType.COMMAND_RESPONSE


def sms_message_type(variant: str, content: str) -> MessageType:
    if variant == "fallback":
        return MessageType.FALLBACK_UPDATE
    return MessageType.URGENT_UPDATE


MESSAGE_TYPE_RULES: Dict[Channel, Callable[[str, str], MessageType]] = {
    Channel.EMAIL:    email_message_type,
    Channel.WHATSAPP: whatsapp_message_type,
    Channel.TELEGRAM: telegram_message_type,
    Channel.SMS:      sms_message_type,
}


def determine_message_type(request: SendRequest) -> MessageType:
    """Apply the rule of the channel the request was made on."""
    rule = MESSAGE_TYPE_RULES[request.channel]
    if request.channel == Channel.EMAIL:
        return rule(request.variant, request.subject or "")
    return rule(request.variant, request.content)
