"""Capability interfaces the engine calls into.

The engine never talks to an SMS gateway, email provider or the CRM
directly. Each collaborator sits behind one of these interfaces; the
HTTP implementations live in ``integrations.http_clients`` and tests
plug in fakes.

Error contract for every method:
- raise ``TransientProviderError`` (or let ``asyncio.TimeoutError``
  escape) for failures worth retrying
- raise ``PermanentProviderError`` when the provider rejected the
  request for good
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from core.constants import MessageKind


# ─── Data Types ────────────────────────────────────────────────

@dataclass
class DeliveryResult:
    """Result of a message delivery attempt."""
    success: bool
    kind: MessageKind
    target: str
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    delivered_at: Optional[str] = None

    @classmethod
    def delivered(cls, kind: MessageKind, target: str, provider_message_id: Optional[str] = None) -> "DeliveryResult":
        return cls(
            success=True,
            kind=kind,
            target=target,
            provider_message_id=provider_message_id,
            delivered_at=datetime.now(timezone.utc).isoformat(),
        )


@dataclass
class CreatedAppointment:
    """Appointment returned by the appointment capability."""
    appointment_id: str
    start_at: int
    appointment_type: str
    metadata: dict[str, Any] = field(default_factory=dict)


# ─── Interfaces ────────────────────────────────────────────────

class MessagingCapability(ABC):
    """SMS/email transport."""

    @abstractmethod
    async def send(
        self,
        kind: MessageKind,
        target: str,
        content: str,
        subject: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> DeliveryResult:
        """Send one rendered message to `target` (phone number or email)."""
        ...


class ClientCapability(ABC):
    """Client-management operations in the CRM."""

    @abstractmethod
    async def get_facts(self, organization_id: str, client_id: str) -> dict[str, Any]:
        """Current client fields (name, phone, email, tags, ...) for a FactSheet."""
        ...

    @abstractmethod
    async def apply_tag(self, organization_id: str, client_id: str, tag: str) -> None:
        ...

    @abstractmethod
    async def remove_tag(
        self,
        organization_id: str,
        client_id: str,
        tag: Optional[str] = None,
        remove_all: bool = False,
    ) -> None:
        ...

    @abstractmethod
    async def add_note(self, organization_id: str, client_id: str, content: str) -> None:
        ...


class AppointmentCapability(ABC):
    """Appointment creation in the CRM calendar."""

    @abstractmethod
    async def create_appointment(
        self,
        organization_id: str,
        client_id: str,
        appointment_type: str,
        start_at: int,
        duration_minutes: int,
        idempotency_key: str,
        title: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> CreatedAppointment:
        """Create an appointment.

        Implementations must dedupe on `idempotency_key`: a retried step
        passes the same key and must get the original appointment back.
        """
        ...


@dataclass
class Capabilities:
    """Bundle of collaborators handed to the step executor."""
    messaging: MessagingCapability
    clients: ClientCapability
    appointments: AppointmentCapability


# ─── Singleton ─────────────────────────────────────────────────

_capabilities: Optional[Capabilities] = None


def get_capabilities() -> Capabilities:
    """Get or create the HTTP-backed capability bundle from settings."""
    global _capabilities
    if _capabilities is None:
        from app.config import get_settings
        from integrations.http_clients import ClinicApiClient, MessagingGatewayClient

        settings = get_settings()
        crm = ClinicApiClient(
            base_url=settings.CRM_API_URL,
            api_key=settings.CRM_API_KEY,
            timeout=settings.PROVIDER_HTTP_TIMEOUT,
        )
        _capabilities = Capabilities(
            messaging=MessagingGatewayClient(
                base_url=settings.MESSAGING_API_URL,
                api_key=settings.MESSAGING_API_KEY,
                timeout=settings.PROVIDER_HTTP_TIMEOUT,
            ),
            clients=crm,
            appointments=crm,
        )
    return _capabilities


def set_capabilities(capabilities: Optional[Capabilities]) -> None:
    """Replace the process-wide bundle (used by tests and embedding apps)."""
    global _capabilities
    _capabilities = capabilities
