from __future__ import annotations

import asyncio
from functools import lru_cache
import logging
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from authbridge.core.config import get_settings
from authbridge.core.errors import ProviderUnavailableError
from authbridge.core.logging import mask_phone


logger = logging.getLogger(__name__)


class SmsSender(Protocol):
    async def send(self, phone_number: str, message: str) -> str:
        ...


class LoggingSmsSender:
    """Development sender: records deliveries in memory and logs masked numbers."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send(self, phone_number: str, message: str) -> str:
        self.sent.append((phone_number, message))
        logger.info("sms_delivery_logged phone=%s", mask_phone(phone_number))
        return f"log-{len(self.sent)}"


class SnsSmsSender:
    def __init__(self, *, region: str, client: Any | None = None) -> None:
        self._region = region
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("sns", region_name=self._region)
        return self._client

    async def send(self, phone_number: str, message: str) -> str:
        # boto3 is synchronous; keep it off the event loop.
        attributes = {
            "AWS.SNS.SMS.SMSType": {"DataType": "String", "StringValue": "Transactional"},
        }
        try:
            response = await asyncio.to_thread(
                self._get_client().publish,
                PhoneNumber=phone_number,
                Message=message,
                MessageAttributes=attributes,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("sms_delivery_failed phone=%s", mask_phone(phone_number), exc_info=exc)
            raise ProviderUnavailableError("SMS delivery failed") from exc
        message_id = str(response.get("MessageId", ""))
        logger.info("sms_delivered phone=%s message_id=%s", mask_phone(phone_number), message_id)
        return message_id


@lru_cache
def get_sms_sender() -> SmsSender:
    settings = get_settings()
    if settings.sms_sender.lower() == "sns":
        return SnsSmsSender(region=settings.sns_region)
    return LoggingSmsSender()
