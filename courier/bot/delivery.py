"""One-shot WebSocket delivery to the relay hub.

Every call opens its own connection, sends one frame and closes. There is no
pooling: delivery volume is low and sporadic.
"""

import asyncio
import json
import logging
import time

from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

from courier.errors import DeliveryError

log = logging.getLogger(__name__)

FRAME_TYPE = "chat_response"
ACK_TYPE = "ack"


def build_frame(record):
    """Wire frame for a persisted response record."""
    return {
        "type": FRAME_TYPE,
        "requestId": record.request_id,
        "message": record.response,
        "metadata": record.metadata,
        "source": record.source,
    }


class DeliveryChannel:
    def __init__(self, url, timeout=5.0, require_ack=False):
        self.url = url
        self.timeout = timeout
        self.require_ack = require_ack

    async def deliver(self, frame):
        request_id = frame.get("requestId")
        t0 = time.time()
        try:
            payload = json.dumps(frame)
        except (TypeError, ValueError) as e:
            raise DeliveryError(f"frame for {request_id} is not serializable: {e}") from e

        try:
            async with connect(
                self.url,
                open_timeout=self.timeout,
                close_timeout=self.timeout,
            ) as ws:
                await asyncio.wait_for(ws.send(payload), self.timeout)
                if self.require_ack:
                    await self._await_ack(ws, request_id)
        except DeliveryError:
            raise
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise DeliveryError(f"delivery of {request_id} to {self.url} failed: {e!r}") from e

        ms = int((time.time() - t0) * 1000)
        log.info(f"[delivery] {request_id} -> {self.url} {ms}ms")

    async def _await_ack(self, ws, request_id):
        raw = await asyncio.wait_for(ws.recv(), self.timeout)
        try:
            ack = json.loads(raw)
        except ValueError as e:
            raise DeliveryError(f"relay sent a non-JSON ack for {request_id}") from e
        if not isinstance(ack, dict) or ack.get("type") != ACK_TYPE or ack.get("requestId") != request_id:
            raise DeliveryError(f"relay did not acknowledge {request_id}: {ack!r}")
