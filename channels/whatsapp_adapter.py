"""
WhatsApp Channel — WhatsApp Business Cloud API integration.

Provides:
- Webhook verification (hub.verify_token challenge)
- Inbound: text, interactive (button_reply, list_reply, nfm_reply flow
  completions), media/location placeholders; status callbacks are ignored
- Outbound payloads: text, interactive buttons, interactive list,
  interactive flow, template (when the 24h window is closed)
- Sending through httpx with tenacity retries on transient failures,
  guarded by a token-bucket limiter and a circuit breaker
- WhatsApp Flow creation (used by flow import with create_in_meta)

Usage:
    sender = WhatsAppCloudSender(settings.whatsapp)
    message_id = await sender.send(outbound_message)
    events = parse_webhook(request_json)
"""
from __future__ import annotations

import json
import re
import time
import structlog
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential,
)

from channels.base import (
    CircuitBreaker, CircuitOpenError, DeliveryError, MessageSender,
    RateLimitedError, SenderMetrics, TokenBucketRateLimiter,
)
from config.settings import WhatsAppConfig
from models.schemas import InboundEvent, InboundKind, OutboundKind, OutboundMessage

logger = structlog.get_logger()

# Cloud API limits for interactive messages
MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20
MAX_LIST_ROWS = 10
MAX_ROW_TITLE = 24
MAX_ROW_DESCRIPTION = 72
MAX_BODY = 1024


def normalize_phone(phone: str) -> str:
    """Normalize phone to digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", phone or "")


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, DeliveryError) and error.transient


# ══════════════════════════════════════════════════════════════
#  WEBHOOK: verification and inbound parsing
# ══════════════════════════════════════════════════════════════

def verify_webhook(params: dict[str, Any], verify_token: str) -> Optional[str]:
    """
    Verify the WhatsApp webhook subscription.
    Returns the challenge string on success, None on failure.
    """
    mode = params.get("hub.mode", "")
    token = params.get("hub.verify_token", "")
    if mode == "subscribe" and verify_token and token == verify_token:
        return params.get("hub.challenge", "")
    return None


def _parse_message(msg: dict[str, Any], sender_name: str) -> Optional[InboundEvent]:
    sender = msg.get("from", "")
    msg_type = msg.get("type", "text")
    fields: dict[str, Any] = {
        "conversation_id": "",          # resolved from the phone number by the orchestrator
        "event_id": msg.get("id", ""),
        "sender_phone": normalize_phone(sender),
        "sender_name": sender_name,
        "message_type": msg_type,
    }
    metadata: dict[str, Any] = {"channel": "whatsapp", "timestamp": msg.get("timestamp")}

    if msg_type == "text":
        fields["text"] = msg.get("text", {}).get("body", "")

    elif msg_type == "interactive":
        interactive = msg.get("interactive", {})
        itype = interactive.get("type", "")
        fields["message_type"] = itype or "interactive"

        if itype == "button_reply":
            reply = interactive.get("button_reply", {})
            fields["text"] = reply.get("title", "")
            fields["button_id"] = reply.get("id") or None

        elif itype == "list_reply":
            reply = interactive.get("list_reply", {})
            fields["text"] = reply.get("title", "")
            fields["list_row_id"] = reply.get("id") or None

        elif itype == "nfm_reply":
            reply = interactive.get("nfm_reply", {})
            try:
                response = json.loads(reply.get("response_json") or "{}")
            except json.JSONDecodeError:
                logger.warning("whatsapp_flow_response_unparseable", message_id=fields["event_id"])
                response = {}
            fields["kind"] = InboundKind.FLOW_RESPONSE
            fields["flow_token"] = response.pop("flow_token", None)
            fields["flow_response"] = response
            fields["text"] = reply.get("body", "")
        else:
            fields["text"] = f"[{itype or 'interactive'}]"

    elif msg_type == "button":
        # Quick-reply button on a template message
        button = msg.get("button", {})
        fields["text"] = button.get("text", "")
        fields["button_id"] = button.get("payload") or None

    elif msg_type in ("image", "video", "document"):
        media = msg.get(msg_type, {})
        placeholder = f"[{msg_type.capitalize()}]"
        fields["text"] = media.get("caption") or media.get("filename") or placeholder
        metadata["media_id"] = media.get("id", "")
        metadata["mime_type"] = media.get("mime_type", "")

    elif msg_type == "location":
        loc = msg.get("location", {})
        lat, lng = loc.get("latitude", 0), loc.get("longitude", 0)
        fields["text"] = f"Location: {lat}, {lng}"
        metadata["latitude"] = lat
        metadata["longitude"] = lng

    elif msg_type == "audio":
        fields["text"] = "[Voice message]"
        metadata["media_id"] = msg.get("audio", {}).get("id", "")

    elif msg_type == "sticker":
        fields["text"] = "[Sticker]"

    elif msg_type == "contacts":
        fields["text"] = "[Shared contact]"

    else:
        fields["text"] = f"[{msg_type}]"

    return InboundEvent(metadata=metadata, **fields)


def parse_webhook(payload: dict[str, Any]) -> list[InboundEvent]:
    """Parse a WhatsApp Cloud API webhook payload into inbound events."""
    events: list[InboundEvent] = []
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            names = {
                c.get("wa_id", ""): c.get("profile", {}).get("name", "")
                for c in value.get("contacts") or []
            }
            for msg in value.get("messages") or []:
                event = _parse_message(msg, names.get(msg.get("from", ""), ""))
                if event is not None:
                    events.append(event)
    if not events and payload.get("object") == "whatsapp_business_account":
        logger.debug("whatsapp_webhook_without_messages")
    return events


# ══════════════════════════════════════════════════════════════
#  OUTBOUND PAYLOADS
# ══════════════════════════════════════════════════════════════

def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 1] + "…"


def _interactive_envelope(message: OutboundMessage, interactive: dict[str, Any]) -> dict[str, Any]:
    if message.header:
        interactive["header"] = {"type": "text", "text": _clip(message.header, 60)}
    if message.footer:
        interactive["footer"] = {"text": _clip(message.footer, 60)}
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": normalize_phone(message.recipient),
        "type": "interactive",
        "interactive": interactive,
    }


def build_payload(message: OutboundMessage) -> dict[str, Any]:
    """Translate an OutboundMessage into a Cloud API /messages request body."""
    to = normalize_phone(message.recipient)

    if message.requires_template:
        template: dict[str, Any] = {
            "name": message.template_name,
            "language": {"code": message.template_language},
        }
        return {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "template",
            "template": template,
        }

    if message.kind == OutboundKind.BUTTONS and message.buttons:
        return _interactive_envelope(message, {
            "type": "button",
            "body": {"text": _clip(message.text or " ", MAX_BODY)},
            "action": {"buttons": [
                {"type": "reply", "reply": {"id": b.id, "title": _clip(b.title, MAX_BUTTON_TITLE)}}
                for b in message.buttons[:MAX_BUTTONS]
            ]},
        })

    if message.kind == OutboundKind.LIST and message.list_sections:
        sections = []
        remaining = MAX_LIST_ROWS
        for section in message.list_sections:
            rows = []
            for row in section.rows[:remaining]:
                item = {"id": row.id, "title": _clip(row.title, MAX_ROW_TITLE)}
                if row.description:
                    item["description"] = _clip(row.description, MAX_ROW_DESCRIPTION)
                rows.append(item)
            remaining -= len(rows)
            if rows:
                sections.append({"title": _clip(section.title, MAX_ROW_TITLE), "rows": rows})
        return _interactive_envelope(message, {
            "type": "list",
            "body": {"text": _clip(message.text or " ", MAX_BODY)},
            "action": {
                "button": _clip(message.list_button_text or "Select", MAX_BUTTON_TITLE),
                "sections": sections,
            },
        })

    if message.kind == OutboundKind.FLOW:
        flow = message.flow
        parameters: dict[str, Any] = {
            "flow_message_version": "3",
            "flow_token": flow.get("flow_token", ""),
            "flow_id": flow.get("flow_id", ""),
            "flow_cta": _clip(flow.get("cta") or "Start", MAX_BUTTON_TITLE),
            "flow_action": flow.get("mode") or "navigate",
        }
        if flow.get("draft"):
            parameters["mode"] = "draft"
        if flow.get("screen"):
            parameters["flow_action_payload"] = {
                "screen": flow["screen"],
                "data": flow.get("data") or {},
            }
        return _interactive_envelope(message, {
            "type": "flow",
            "body": {"text": _clip(message.text or " ", MAX_BODY)},
            "action": {"name": "flow", "parameters": parameters},
        })

    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to,
        "type": "text",
        "text": {"preview_url": False, "body": message.text},
    }


# ══════════════════════════════════════════════════════════════
#  CLOUD API SENDER
# ══════════════════════════════════════════════════════════════

class WhatsAppCloudSender(MessageSender):
    """
    Sends OutboundMessages through the Graph API `/{phone_number_id}/messages`
    endpoint. Transient failures (network, 408/429/5xx) are retried with
    exponential backoff; permanent rejections raise immediately.
    """

    channel = "whatsapp"

    def __init__(
        self, config: WhatsAppConfig,
        client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 3,
        retry_wait: Any = None,
    ):
        self.config = config
        self.client = client
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, max=10)
        self._breaker = CircuitBreaker(name="whatsapp")
        self._rate_limiter = (
            TokenBucketRateLimiter(rate=config.rate_per_second, burst=config.burst)
            if config.rate_per_second > 0 else None
        )
        self._metrics = SenderMetrics(self.channel)

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=f"{self.config.api_base_url.rstrip('/')}/{self.config.api_version}",
                headers={"Authorization": f"Bearer {self.config.access_token}"},
                timeout=30.0,
            )
        return self.client

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post(path, json=payload)
        except httpx.HTTPError as e:
            raise DeliveryError(f"WhatsApp API unreachable: {e}") from e
        if response.status_code >= 400:
            try:
                detail = response.json().get("error", {}).get("message", response.text)
            except ValueError:
                detail = response.text
            raise DeliveryError(
                f"WhatsApp API error {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        return response.json()

    async def _post_with_retry(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.retry_wait,
            retry=retry_if_exception(_is_transient),
            reraise=True,
        ):
            with attempt:
                return await self._post(path, payload)

    async def send(self, message: OutboundMessage) -> str:
        if message.requires_template and not message.template_name:
            raise DeliveryError("conversation window closed and no template configured",
                                transient=False)
        if self._rate_limiter and not await self._rate_limiter.acquire(timeout=10.0):
            self._metrics.record_failure("rate_limited")
            raise RateLimitedError(self.channel)
        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            raise CircuitOpenError(self.channel)

        payload = build_payload(message)
        start = time.monotonic()
        try:
            result = await self._post_with_retry(f"/{self.config.phone_number_id}/messages", payload)
        except DeliveryError as e:
            if e.transient:
                self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            logger.error("whatsapp_send_failed", to=payload["to"], type=payload["type"],
                         status_code=e.status_code, transient=e.transient, error=str(e))
            raise

        self._breaker.record_success()
        self._metrics.record_send((time.monotonic() - start) * 1000, template=message.requires_template)
        messages = result.get("messages") or [{}]
        message_id = messages[0].get("id", "")
        logger.info("whatsapp_message_sent", to=payload["to"], type=payload["type"],
                    message_id=message_id)
        return message_id

    async def create_flow(
        self, name: str, categories: list[str], flow_json: dict[str, Any],
        endpoint_uri: Optional[str] = None,
    ) -> str:
        """Create a WhatsApp Flow on the business account. Returns the remote flow id."""
        payload: dict[str, Any] = {
            "name": name,
            "categories": categories or ["OTHER"],
            "flow_json": json.dumps(flow_json),
        }
        if endpoint_uri:
            payload["endpoint_uri"] = endpoint_uri
        result = await self._post_with_retry(f"/{self.config.business_account_id}/flows", payload)
        flow_id = result.get("id", "")
        logger.info("whatsapp_flow_created", name=name, flow_id=flow_id,
                    validation_errors=len(result.get("validation_errors") or []))
        return flow_id

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()
