"""
Operator alerts over the WhatsApp Cloud API.

Sends plain text messages to one configured operator number. Used when a
circuit breaker opens and when an approved action could not be applied.

Not configured (token, phone number id or recipient missing) means every send
is skipped with a log line. Transport errors and non-2xx responses raise
UpstreamServiceError from send_text; send_alert logs and swallows them.

Usage:
    notifier = WhatsAppNotifier.from_settings()
    await notifier.send_alert(format_circuit_alert("agent_002_funding", 5))
"""

import asyncio
from typing import Any, Callable, Optional, Set

import httpx
import structlog

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import UpstreamServiceError

logger = structlog.get_logger(__name__)


class WhatsAppNotifier:
    def __init__(
        self,
        access_token: str = "",
        phone_number_id: str = "",
        recipient: str = "",
        api_base: str = "https://graph.facebook.com/v19.0",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.recipient = recipient
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, config: Settings = default_settings, **kwargs: Any) -> "WhatsAppNotifier":
        return cls(
            access_token=config.WHATSAPP_ACCESS_TOKEN,
            phone_number_id=config.WHATSAPP_PHONE_NUMBER_ID,
            recipient=config.WHATSAPP_ALERT_RECIPIENT,
            api_base=config.WHATSAPP_API_BASE,
            **kwargs,
        )

    @property
    def configured(self) -> bool:
        return bool(self.access_token and self.phone_number_id and self.recipient)

    async def send_text(self, body: str, to: Optional[str] = None) -> Optional[str]:
        """
        Send a text message. Returns the WhatsApp message id, or None when
        notifications are not configured.
        """
        if not self.configured:
            logger.info("WhatsApp not configured, skipping notification")
            return None

        url = f"{self.api_base}/{self.phone_number_id}/messages"
        payload = {
            "messaging_product": "whatsapp",
            "to": to or self.recipient,
            "type": "text",
            "text": {"preview_url": False, "body": body},
        }
        headers = {"Authorization": f"Bearer {self.access_token}"}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise UpstreamServiceError(
                    "whatsapp",
                    f"send failed: {e.response.text[:200]}",
                    status=e.response.status_code,
                ) from e
            except httpx.HTTPError as e:
                raise UpstreamServiceError("whatsapp", f"send failed: {e}") from e

        data = response.json()
        messages = data.get("messages") or [{}]
        message_id = messages[0].get("id")
        logger.info("WhatsApp notification sent", message_id=message_id)
        return message_id

    async def send_alert(self, body: str) -> bool:
        """Best-effort send. True only if a message went out."""
        try:
            return await self.send_text(body) is not None
        except UpstreamServiceError as e:
            logger.warning("Operator alert failed", error=e.message, status=e.status)
            return False


def format_circuit_alert(agent_id: str, failures: int) -> str:
    return (
        f"[Agent Ops] Circuit breaker OPEN for {agent_id} after {failures} failures. "
        "Runs are blocked until the cooldown passes or an operator resets it."
    )


def format_dispatch_alert(approval_id: int, item_type: str, item_id: str, error: str) -> str:
    return (
        f"[Agent Ops] Approval {approval_id} ({item_type} {item_id}) was approved "
        f"but could not be applied: {error}. Manual follow-up needed."
    )


def make_circuit_alert_listener(
    notifier: WhatsAppNotifier,
    pending: Optional[Set["asyncio.Task[Any]"]] = None,
) -> Callable[[str, str, str, int], None]:
    """
    Circuit breaker listener that alerts the operator when a breaker opens.

    The send is scheduled on the running loop; outside a loop the alert is
    only logged.
    """
    tasks: Set["asyncio.Task[Any]"] = pending if pending is not None else set()

    def _on_state_change(agent_id: str, old_state: str, new_state: str, failures: int) -> None:
        if new_state != "open":
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No event loop for circuit alert", agent_id=agent_id, failures=failures)
            return
        task = loop.create_task(notifier.send_alert(format_circuit_alert(agent_id, failures)))
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    return _on_state_change


__all__ = [
    "WhatsAppNotifier",
    "format_circuit_alert",
    "format_dispatch_alert",
    "make_circuit_alert_listener",
]
