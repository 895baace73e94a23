"""ACTION node handler: builds channel payloads and hands them to adapters."""

import re
from typing import Any, Dict, Optional

from ..models.core import NodeType
from ..core.conditions import MISSING
from ..core.delivery import (
    CHANNELS,
    ActionPayload,
    AdapterRegistry,
    RecordingAdapter,
    StaticTemplateResolver,
    TemplateResolver,
)
from ..core.exceptions import DeliveryError, ValidationError, WorkflowEngineError
from ..core.logging import get_logger
from ..core.variables import VariableResolver
from .base import HandlerContext, NodeHandler, NodeResult

logger = get_logger(__name__)

EMAIL_PATHS = ("email", "customerEmail", "employeeEmail", "user.email", "customer.email", "employee.email")
PHONE_PATHS = ("phone", "phoneNumber", "mobile", "customerPhone", "employeePhone")

_TAG_PATTERN = re.compile(r"<[^>]*>")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_ENTITIES = (
    ("&nbsp;", " "),
    ("&amp;", "&"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
)


def strip_html(text: Optional[str]) -> str:
    """Plain-text rendition of an HTML fragment for SMS-style channels."""
    if not text:
        return ""
    plain = _TAG_PATTERN.sub(" ", str(text))
    for entity, replacement in _ENTITIES:
        plain = plain.replace(entity, replacement)
    return _WHITESPACE_PATTERN.sub(" ", plain).strip()


def _first_string(variables: VariableResolver, paths) -> Optional[str]:
    for path in paths:
        value = variables.resolve_path(f"payload.{path}")
        if value is not MISSING and isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_recipient_email(variables: VariableResolver) -> Optional[str]:
    return _first_string(variables, EMAIL_PATHS)


def extract_recipient_phone(variables: VariableResolver) -> Optional[str]:
    phone = _first_string(variables, PHONE_PATHS)
    if phone:
        return phone
    # Any nested object carrying a phone, e.g. payload.contact.phone
    for value in (variables.trigger_data or {}).values():
        if isinstance(value, dict) and isinstance(value.get("phone"), str) and value["phone"].strip():
            return value["phone"].strip()
    return None


class ActionHandler(NodeHandler):
    """Sends email, SMS, WhatsApp, Slack or calendar actions through adapters."""

    node_type = NodeType.ACTION

    def __init__(
        self,
        adapters: Optional[AdapterRegistry] = None,
        template_resolver: Optional[TemplateResolver] = None
    ):
        self.adapters = adapters or AdapterRegistry(default=RecordingAdapter())
        self.template_resolver = template_resolver or StaticTemplateResolver()

    @staticmethod
    def _channel(config: Dict[str, Any]) -> Optional[str]:
        action_type = config.get("actionType") or config.get("type")
        if action_type:
            return str(action_type).strip().lower()
        for channel in CHANNELS:
            if config.get(f"{channel}Action") or config.get(channel):
                return channel
        return None

    @staticmethod
    def _sub_config(config: Dict[str, Any], channel: str) -> Optional[Dict[str, Any]]:
        sub = config.get(f"{channel}Action") or config.get(channel)
        return sub if isinstance(sub, dict) and sub else None

    def execute(self, config: Dict[str, Any], variables: VariableResolver, context: HandlerContext) -> NodeResult:
        config = config or {}
        channel = self._channel(config)
        if channel is None:
            return NodeResult.skipped("Action node has no configured sub-action")
        if channel not in CHANNELS:
            raise ValidationError(f"Unsupported action type '{channel}'", field="actionType")

        sub = self._sub_config(config, channel)
        if sub is None:
            return NodeResult.skipped(f"Action node has no configured {channel} sub-action")

        mode = str(config.get("mode") or sub.get("mode") or "CUSTOM").upper()
        template_id = config.get("templateId") or sub.get("templateId")
        content = self.template_resolver.resolve(
            mode,
            template_id,
            context.organization_id,
            {
                "subject": sub.get("subject") or sub.get("title"),
                "body": sub.get("htmlBody") or sub.get("body") or sub.get("textBody"),
                "message": sub.get("message"),
            }
        )
        subject = variables.interpolate(content.get("subject"))
        body = variables.interpolate(content.get("body"))
        message = variables.interpolate(content.get("message"))

        recipient, data = self._route(channel, sub, variables)
        if channel in ("sms", "whatsapp"):
            body = strip_html(message or body)

        payload = ActionPayload(
            channel=channel,
            organization_id=context.organization_id,
            execution_id=context.execution_id,
            node_key=context.node.node_key,
            idempotency_key=context.idempotency_key,
            recipient=recipient,
            subject=subject if channel in ("email", "calendar") else None,
            body=body,
            data=data,
            metadata={"mode": mode, "templateId": template_id, "workflowId": context.workflow_id},
        )

        adapter = self.adapters.get(channel)
        try:
            result = adapter.send(payload)
        except WorkflowEngineError:
            raise
        except Exception as e:
            raise DeliveryError(
                f"{channel} delivery failed: {str(e)}",
                channel=channel,
                node_id=context.node.node_key,
                execution_id=context.execution_id
            )
        if not result.success:
            raise DeliveryError(
                result.error or f"{channel} delivery failed",
                channel=channel,
                node_id=context.node.node_key,
                execution_id=context.execution_id
            )

        logger.info(f"Delivered {channel} action for node {context.node.node_key} to {recipient}")
        return NodeResult.completed({
            "channel": channel,
            "sent": True,
            "providerId": result.provider_id,
            "recipient": recipient,
            "subject": payload.subject,
            "body": payload.body,
        })

    def _route(self, channel: str, sub: Dict[str, Any], variables: VariableResolver):
        """Resolve the recipient and channel-specific data."""
        explicit = variables.interpolate(sub.get("to") or sub.get("recipient"))
        data: Dict[str, Any] = {}

        if channel == "email":
            recipient = explicit or extract_recipient_email(variables)
            for key in ("fromName", "fromEmail", "replyTo"):
                if sub.get(key):
                    data[key] = variables.interpolate(sub[key])
            if not recipient:
                raise DeliveryError("No recipient email found in trigger data", channel=channel, recoverable=False)
        elif channel in ("sms", "whatsapp"):
            recipient = explicit or extract_recipient_phone(variables)
            if sub.get("fromNumber"):
                data["fromNumber"] = sub["fromNumber"]
            if not recipient:
                raise DeliveryError("No recipient phone found in trigger data", channel=channel, recoverable=False)
        elif channel == "slack":
            recipient = explicit or variables.interpolate(sub.get("channel"))
            if not recipient:
                raise DeliveryError("No Slack channel configured", channel=channel, recoverable=False)
        else:
            attendees = variables.interpolate(sub.get("attendees")) or []
            if isinstance(attendees, str):
                attendees = [a.strip() for a in attendees.split(",") if a.strip()]
            fallback = extract_recipient_email(variables)
            if not attendees and (explicit or fallback):
                attendees = [explicit or fallback]
            if not attendees:
                raise DeliveryError("No calendar attendee found in trigger data", channel=channel, recoverable=False)
            recipient = attendees[0]
            data.update({
                "attendees": attendees,
                "startTime": variables.interpolate(sub.get("startTime")),
                "endTime": variables.interpolate(sub.get("endTime")),
                "durationMinutes": sub.get("durationMinutes"),
                "location": variables.interpolate(sub.get("location")),
            })
        return recipient, data
