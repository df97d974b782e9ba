"""
Twilio REST command wrapper.

The Twilio SDK is synchronous; every call runs in a worker thread so a slow
provider response never stalls the event loop. Failures surface as
TelephonyError and are never retried here.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

import structlog
from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from src.leadbridge.config import Config, get_config

logger = structlog.get_logger(__name__)


class TelephonyError(Exception):
    """Raised when a Twilio command fails."""

    def __init__(self, message: str, *, call_id: str = "", operation: str = ""):
        super().__init__(message)
        self.call_id = call_id
        self.operation = operation


@dataclass(frozen=True)
class CreatedCall:
    call_id: str
    status: str


class TelephonyClient:
    """Async facade over `twilio.rest.Client`."""

    def __init__(self, config: Optional[Config] = None, client: Optional[Any] = None):
        self.config = config or get_config()
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = TwilioClient(
                self.config.twilio_account_sid,
                self.config.twilio_auth_token,
            )
        return self._client

    async def _run(self, operation: str, call_id: str, fn, *args, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except TwilioException as e:
            logger.error("Twilio command failed", operation=operation, call_id=call_id, error=str(e))
            raise TelephonyError(str(e), call_id=call_id, operation=operation) from e
        except OSError as e:
            logger.error("Twilio transport error", operation=operation, call_id=call_id, error=str(e))
            raise TelephonyError(str(e), call_id=call_id, operation=operation) from e

    async def create_call(
        self,
        *,
        to: str,
        url: str,
        status_callback: str,
        amd_callback: Optional[str] = None,
    ) -> CreatedCall:
        """
        Place an outbound call.

        With `amd_callback` set, answering-machine detection runs asynchronously
        and its verdict is posted there.
        """
        params: dict[str, Any] = {
            "to": to,
            "from_": self.config.twilio_phone_number,
            "url": url,
            "status_callback": status_callback,
            "status_callback_event": ["initiated", "ringing", "answered", "completed"],
            "status_callback_method": "POST",
        }
        if amd_callback:
            params.update(
                machine_detection="DetectMessageEnd",
                async_amd="true",
                async_amd_status_callback=amd_callback,
                async_amd_status_callback_method="POST",
            )

        call = await self._run("create_call", "", self.client.calls.create, **params)
        logger.info("Call created", call_id=call.sid, to_suffix=to[-4:], amd=bool(amd_callback))
        return CreatedCall(call_id=call.sid, status=str(call.status or ""))

    async def update_call(self, call_id: str, twiml: str) -> None:
        """Replace the live call's TwiML."""
        await self._run("update_call", call_id, self.client.calls(call_id).update, twiml=twiml)
        logger.info("Call updated", call_id=call_id)

    async def hangup(self, call_id: str) -> None:
        await self._run("hangup", call_id, self.client.calls(call_id).update, status="completed")
        logger.info("Call hung up", call_id=call_id)
