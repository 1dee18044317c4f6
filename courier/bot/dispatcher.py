import asyncio
import logging

from courier.bot.delivery import build_frame
from courier.errors import DeliveryError
from courier.memory.action_log import log_action

log = logging.getLogger(__name__)


class ResponseDispatcher:
    """Persist, then deliver, then release or park one request.

    The response is on disk before any delivery attempt, so an undelivered
    response can always be replayed with redeliver().
    """

    def __init__(self, responses, channel, claims=None, db=None, retries=3, backoff=0.5):
        self.responses = responses
        self.channel = channel
        self.claims = claims
        self.db = db
        self.retries = max(1, retries)
        self.backoff = backoff

    def _record(self, request_id, action_type, metadata=None):
        if self.db is not None:
            log_action(self.db, request_id, action_type, metadata)

    async def dispatch(self, request_id, response, metadata=None):
        """Returns True once the relay has the frame, False if every attempt failed.

        PersistError propagates: without a stored response there is nothing to redeliver.
        """
        record = self.responses.persist(request_id, response, metadata)
        self._record(request_id, "persisted", {"chars": len(response)})
        return await self._deliver(record)

    async def redeliver(self, request_id):
        """Replay a persisted response. Raises ReadError if none was stored."""
        record = self.responses.get(request_id)
        delivered = await self._deliver(record)
        if delivered:
            self._record(request_id, "redelivered")
            if self.claims is not None:
                self.claims.discard(request_id)
        return delivered

    def settle(self, request_id, delivered):
        """Release the claim only on confirmed delivery; otherwise park it."""
        if self.claims is None:
            return
        if delivered:
            self.claims.release(request_id)
            self._record(request_id, "released")
        elif self.claims.park(request_id):
            self._record(request_id, "dead_letter", {"reason": "undelivered"})

    async def dispatch_and_settle(self, request_id, response, metadata=None):
        delivered = await self.dispatch(request_id, response, metadata)
        self.settle(request_id, delivered)
        return delivered

    async def _deliver(self, record):
        frame = build_frame(record)
        for attempt in range(1, self.retries + 1):
            try:
                await self.channel.deliver(frame)
            except DeliveryError as e:
                log.error(f"[dispatch] {record.request_id} attempt {attempt}/{self.retries} failed: {e}")
                self._record(record.request_id, "delivery_failed", {"attempt": attempt, "error": str(e)})
                if attempt < self.retries and self.backoff:
                    await asyncio.sleep(self.backoff * 2 ** (attempt - 1))
                continue
            self._record(record.request_id, "delivered", {"attempt": attempt})
            return True
        log.error(f"[dispatch] {record.request_id} undelivered after {self.retries} attempts; response kept for redelivery")
        return False
