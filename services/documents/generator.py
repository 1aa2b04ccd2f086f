"""
services/documents/generator.py
Client for the external document service (quotes, contracts, invoices...).

The engine never renders documents itself; it asks for the set belonging
to a (booking, trigger) and attaches the subset each recipient may see.
"""

import base64
import binascii
import logging
import uuid
from dataclasses import dataclass
from typing import List, Protocol

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.settings import settings
from shared.models.models import DocumentType
from shared.utils.errors import EngineError, NotFoundError, TransientChannelError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneratedDocument:
    type: DocumentType
    filename: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)

    def describe(self) -> dict:
        """Attachment entry stored in notification metadata (never the blob)."""
        return {"type": self.type.value, "filename": self.filename, "size": self.size}


class DocumentGenerator(Protocol):
    async def generate_documents(
        self, booking_id: uuid.UUID, trigger: str
    ) -> List[GeneratedDocument]: ...


class DocumentServiceError(EngineError):
    """Document service rejected the request or returned garbage."""


class HttpDocumentGenerator:
    """
    POST {DOCUMENTS_SERVICE_URL}/documents/generate
        {"booking_id": "...", "trigger": "PAYMENT_COMPLETED"}
    → {"documents": [{"type": "INVOICE", "filename": "...", "content_base64": "..."}]}
    """

    def __init__(
        self,
        base_url: str = settings.DOCUMENTS_SERVICE_URL,
        timeout: float = settings.DOCUMENTS_SERVICE_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def generate_documents(
        self, booking_id: uuid.UUID, trigger: str
    ) -> List[GeneratedDocument]:
        try:
            body = await self._request(booking_id, trigger)
        except (httpx.TransportError, TransientChannelError) as e:
            raise TransientChannelError(
                "Document service unavailable", booking_id=booking_id, error=str(e)
            ) from e

        documents = [self._parse(item) for item in body.get("documents", [])]
        logger.info(
            f"Generated {len(documents)} document(s) for booking {booking_id} / {trigger}"
        )
        return documents

    @retry(
        retry=retry_if_exception_type((httpx.TransportError, TransientChannelError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        reraise=True,
    )
    async def _request(self, booking_id: uuid.UUID, trigger: str) -> dict:
        payload = {"booking_id": str(booking_id), "trigger": trigger}
        if self._client is not None:
            response = await self._client.post(f"{self.base_url}/documents/generate", json=payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.base_url}/documents/generate", json=payload)

        if response.status_code == 404:
            raise NotFoundError("Booking unknown to document service", booking_id=booking_id)
        if response.status_code >= 500:
            raise TransientChannelError(
                "Document service error", status_code=response.status_code
            )
        if response.status_code >= 400:
            raise DocumentServiceError(
                "Document request rejected", status_code=response.status_code, body=response.text[:200]
            )
        return response.json()

    @staticmethod
    def _parse(item: dict) -> GeneratedDocument:
        try:
            return GeneratedDocument(
                type=DocumentType(item["type"]),
                filename=item["filename"],
                content=base64.b64decode(item["content_base64"], validate=True),
            )
        except (KeyError, ValueError, binascii.Error) as e:
            raise DocumentServiceError("Malformed document in response", error=str(e)) from e

