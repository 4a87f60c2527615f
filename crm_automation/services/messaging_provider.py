import uuid
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class MessageSendRequest:
    business_id: str
    recipient: str
    content: str
    subject: str | None = None


@dataclass(frozen=True)
class MessageSendResult:
    provider: str
    message_id: str
    status: str


class MessagingProvider(Protocol):
    name: str

    def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        ...


class StubProvider:
    """Accepts every message without contacting a real channel."""

    def __init__(self, name: str, *, id_prefix: str) -> None:
        self.name = name
        self._id_prefix = id_prefix

    def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        if not request.recipient.strip():
            raise ValueError(f"{self.name} requires a recipient")
        return MessageSendResult(
            provider=self.name,
            message_id=f"{self._id_prefix}-{uuid.uuid4().hex[:14]}",
            status="sent",
        )


def default_messaging_providers() -> dict[str, MessagingProvider]:
    return {
        "email_stub": StubProvider("email_stub", id_prefix="eml"),
        "sms_stub": StubProvider("sms_stub", id_prefix="sms"),
        "whatsapp_stub": StubProvider("whatsapp_stub", id_prefix="msg"),
    }


def get_messaging_provider(providers: dict[str, MessagingProvider], name: str) -> MessagingProvider:
    normalized = (name or "").strip().lower()
    provider = providers.get(normalized)
    if not provider:
        available = ", ".join(sorted(providers))
        raise ValueError(f"Unknown messaging provider '{name}'. Available: {available}")
    return provider
