"""Provider-agnostic action payloads, delivery adapters and template resolution."""

import threading
import uuid
from typing import Any, Dict, List, Optional, Protocol

import requests
from pydantic import BaseModel, Field

from .error_recovery import CircuitBreaker
from .exceptions import DeliveryError, TransientError
from .logging import get_logger

logger = get_logger(__name__)

CHANNELS = ("email", "sms", "whatsapp", "slack", "calendar")


class ActionPayload(BaseModel):
    """What an ACTION node asks a channel provider to do."""
    channel: str
    organization_id: Optional[str] = None
    execution_id: str
    node_key: str
    idempotency_key: str
    recipient: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DeliveryResult(BaseModel):
    success: bool
    provider_id: Optional[str] = None
    error: Optional[str] = None


class DeliveryAdapter(Protocol):
    def send(self, payload: ActionPayload) -> DeliveryResult:
        ...


class TemplateResolver(Protocol):
    def resolve(
        self,
        mode: str,
        template_id: Optional[str],
        organization_id: Optional[str],
        fallback: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Return `{subject, body, message}` for the node's content."""
        ...


class RecordingAdapter:
    """Keeps every payload in memory instead of delivering it."""

    def __init__(self, name: str = "recording", fail_with: Optional[str] = None):
        self.name = name
        self.fail_with = fail_with
        self._sent: List[ActionPayload] = []
        self._lock = threading.Lock()

    @property
    def sent(self) -> List[ActionPayload]:
        with self._lock:
            return list(self._sent)

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self._sent)

    def send(self, payload: ActionPayload) -> DeliveryResult:
        with self._lock:
            self._sent.append(payload)
        if self.fail_with:
            return DeliveryResult(success=False, error=self.fail_with)
        return DeliveryResult(success=True, provider_id=f"{self.name}-{uuid.uuid4().hex[:12]}")

    def clear(self):
        with self._lock:
            self._sent = []


class WebhookDeliveryAdapter:
    """POSTs the JSON payload to a delivery gateway."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60.0,
            expected_exception=requests.RequestException,
            name="webhook_delivery"
        )

    def _post(self, payload: ActionPayload) -> requests.Response:
        response = self.session.post(
            self.url,
            json=payload.model_dump(mode="json"),
            headers={"Idempotency-Key": payload.idempotency_key},
            timeout=self.timeout
        )
        response.raise_for_status()
        return response

    def send(self, payload: ActionPayload) -> DeliveryResult:
        try:
            response = self.circuit_breaker.call(self._post, payload)
        except TransientError as e:
            raise DeliveryError(str(e), channel=payload.channel, provider="webhook")
        except requests.RequestException as e:
            logger.error(f"Webhook delivery to {self.url} failed: {str(e)}")
            raise DeliveryError(
                f"Webhook delivery failed: {str(e)}",
                channel=payload.channel,
                provider="webhook"
            )

        provider_id = None
        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if isinstance(body, dict):
                provider_id = body.get("id") or body.get("provider_id")
        return DeliveryResult(success=True, provider_id=provider_id)


class AdapterRegistry:
    """Maps action channels to delivery adapters."""

    def __init__(self, default: Optional[DeliveryAdapter] = None):
        self._default = default
        self._adapters: Dict[str, DeliveryAdapter] = {}

    def register(self, channel: str, adapter: DeliveryAdapter):
        self._adapters[channel.lower()] = adapter

    def get(self, channel: str) -> DeliveryAdapter:
        adapter = self._adapters.get(channel.lower(), self._default)
        if adapter is None:
            raise DeliveryError(f"No delivery adapter registered for channel '{channel}'", channel=channel)
        return adapter

    def channels(self) -> List[str]:
        return sorted(self._adapters)


class StaticTemplateResolver:
    """Template lookup from an in-memory table keyed by (organization, template id)."""

    def __init__(self, templates: Optional[Dict[str, Dict[str, Any]]] = None):
        self._templates: Dict[str, Dict[str, Any]] = dict(templates or {})

    def add(self, template_id: str, content: Dict[str, Any], organization_id: Optional[str] = None):
        key = f"{organization_id}:{template_id}" if organization_id else template_id
        self._templates[key] = content

    def resolve(
        self,
        mode: str,
        template_id: Optional[str],
        organization_id: Optional[str],
        fallback: Dict[str, Any]
    ) -> Dict[str, Any]:
        content = dict(fallback or {})
        if str(mode).upper() == "TEMPLATE" and template_id:
            template = (
                self._templates.get(f"{organization_id}:{template_id}")
                or self._templates.get(template_id)
            )
            if template is None:
                logger.warning(f"Template '{template_id}' not found, using inline content")
            else:
                content.update({k: v for k, v in template.items() if v is not None})
        return {
            "subject": content.get("subject"),
            "body": content.get("body") or content.get("message"),
            "message": content.get("message") or content.get("body"),
        }
