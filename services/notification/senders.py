"""
services/notification/senders.py
Channel senders backed by Resend (email) and Twilio (SMS, WhatsApp).

Provider SDKs are synchronous; calls run in a worker thread, are retried
with tenacity on transient failures and guarded by one pybreaker circuit
per channel. Whatever happens, the caller gets a SendOutcome back.
"""

import asyncio
import logging
from typing import Any, Callable, Sequence

import resend
from pybreaker import CircuitBreakerError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from config.settings import settings
from services.documents.generator import GeneratedDocument
from services.notification.dispatcher import SendOutcome
from services.notification.templates import render
from shared.utils.errors import EngineError, TransientChannelError
from shared.utils.resilience import CircuitBreakerManager, circuit_breaker_manager

logger = logging.getLogger(__name__)


class PermanentChannelError(EngineError):
    """Provider rejected the message (bad number, invalid address); retrying won't help."""


# ── Provider calls (blocking, run in a thread) ────────────────

def _resend_send(params: dict) -> str:
    resend.api_key = settings.RESEND_API_KEY
    try:
        result = resend.Emails.send(params)
    except Exception as e:
        code = getattr(e, "code", None)
        if isinstance(code, int) and code < 500:
            raise PermanentChannelError("Resend rejected email", code=code, error=str(e)) from e
        raise TransientChannelError("Resend send failed", error=str(e)) from e
    return result.get("id") if isinstance(result, dict) else getattr(result, "id", None)


def _twilio_client() -> Client:
    # HTTP timeout matches the dispatcher bound so the worker thread stops with it
    return Client(
        settings.TWILIO_ACCOUNT_SID,
        settings.TWILIO_AUTH_TOKEN,
        http_client=TwilioHttpClient(timeout=settings.CHANNEL_SEND_TIMEOUT_SECONDS),
    )


def _twilio_send(to: str, body: str, from_: str) -> str:
    client = _twilio_client()
    try:
        message = client.messages.create(body=body, from_=from_, to=to)
    except TwilioRestException as e:
        if e.status and e.status < 500:
            raise PermanentChannelError("Twilio rejected message", status=e.status, code=e.code) from e
        raise TransientChannelError("Twilio send failed", status=e.status) from e
    except Exception as e:
        raise TransientChannelError("Twilio unreachable", error=str(e)) from e
    return message.sid


# ── Sender ────────────────────────────────────────────────────

class ProviderChannelSender:

    def __init__(
        self,
        breakers: CircuitBreakerManager = circuit_breaker_manager,
        max_attempts: int = settings.CHANNEL_SEND_MAX_ATTEMPTS,
    ):
        self.breakers = breakers
        self.max_attempts = max_attempts

    async def send_email(
        self,
        to: str,
        template_id: str,
        payload: dict,
        attachments: Sequence[GeneratedDocument],
    ) -> SendOutcome:
        params = {
            "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
            "to": [to],
            "subject": render(template_id, "email_subject", payload),
            "text": render(template_id, "email_body", payload),
        }
        if attachments:
            params["attachments"] = [
                {"filename": doc.filename, "content": list(doc.content)} for doc in attachments
            ]
        return await self._send("email", _resend_send, params)

    async def send_sms(self, to: str, payload: dict) -> SendOutcome:
        return await self._send("sms", _twilio_send, to, payload["message"], settings.TWILIO_FROM_NUMBER)

    async def send_whatsapp(self, to: str, template_id: str, variables: dict) -> SendOutcome:
        body = render(template_id, "whatsapp", variables)
        return await self._send(
            "whatsapp",
            _twilio_send,
            f"whatsapp:{to}",
            body,
            f"whatsapp:{settings.TWILIO_WHATSAPP_FROM}",
        )

    async def _send(self, channel: str, fn: Callable[..., str], *args: Any) -> SendOutcome:
        breaker = self.breakers.get_breaker(channel)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=0.25, max=1),
                retry=retry_if_exception_type(TransientChannelError),
                reraise=True,
            ):
                with attempt:
                    provider_ref = await asyncio.to_thread(breaker.call, fn, *args)
        except CircuitBreakerError:
            logger.warning(f"{channel} circuit open, not sending")
            return SendOutcome.failed(f"{channel} circuit open")
        except (TransientChannelError, PermanentChannelError) as e:
            logger.warning(f"{channel} send failed: {e}")
            return SendOutcome.failed(str(e))

        return SendOutcome(delivered=True, provider_ref=provider_ref)
