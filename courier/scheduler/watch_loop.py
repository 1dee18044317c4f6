"""Watch loop: find pending requests, claim them, run them through the worker.

Two drivers share one cycle: a fixed poll interval, or watchdog change
notifications on the mailbox directory (with the poll interval as a fallback).
"""

import asyncio
import inspect
import logging
import time

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from courier.errors import AlreadyClaimed, CourierError, PersistError, ReadError
from courier.memory.action_log import log_action

log = logging.getLogger(__name__)

MODES = ("poll", "notify")


class MailboxChangeHandler(FileSystemEventHandler):
    """Wakes the loop when a pending request file appears."""

    def __init__(self, wake):
        self.wake = wake

    def _maybe_wake(self, path):
        name = str(path).replace("\\", "/").rsplit("/", 1)[-1]
        if name.endswith(".json") and not name.startswith("."):
            self.wake()

    def on_created(self, event):
        if not event.is_directory:
            self._maybe_wake(event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self._maybe_wake(event.dest_path)


class WatchLoop:
    def __init__(
        self,
        store,
        claims,
        dispatcher,
        responder,
        context_builder=None,
        db=None,
        mode="poll",
        poll_interval=2.0,
        max_in_flight=1,
        claim_ttl=0,
        shutdown_grace=10.0,
        observer_factory=Observer,
    ):
        if mode not in MODES:
            raise ValueError(f"unknown watch mode {mode!r}, expected one of {MODES}")
        self.store = store
        self.claims = claims
        self.dispatcher = dispatcher
        self.responder = responder
        self.context_builder = context_builder
        self.db = db
        self.mode = mode
        self.poll_interval = poll_interval
        self.max_in_flight = max(1, max_in_flight)
        self.claim_ttl = claim_ttl
        self.shutdown_grace = shutdown_grace
        self.observer_factory = observer_factory

        self._slots = asyncio.Semaphore(self.max_in_flight)
        self._stopping = asyncio.Event()
        self._wake = asyncio.Event()
        self._tasks = set()
        # ids this loop holds claims on
        self._active = set()

    def _record(self, request_id, action_type, metadata=None):
        if self.db is not None:
            log_action(self.db, request_id, action_type, metadata)

    async def run_cycle(self):
        """Claim whatever is pending and start processing it. Returns claimed ids."""
        for request_id in self.claims.reclaim_expired(self.claim_ttl, skip=self._active):
            self._record(request_id, "reclaimed")

        started = []
        for request_id in self.store.list_pending():
            if self._stopping.is_set():
                break
            if not await self._acquire_slot():
                break
            try:
                self.claims.claim(request_id)
            except AlreadyClaimed:
                self._slots.release()
                log.debug(f"[watch] {request_id} already claimed, skipping")
                continue
            except (OSError, CourierError) as e:
                self._slots.release()
                log.error(f"[watch] cannot claim {request_id}: {e}")
                continue

            self._record(request_id, "claimed")
            self._active.add(request_id)
            task = asyncio.create_task(self._process(request_id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.append(request_id)

        if started:
            log.info(f"[watch] claimed {len(started)}: {', '.join(started)}")
        return started

    async def _acquire_slot(self):
        """Wait for a free worker slot. False once a stop has been requested."""
        acquire = asyncio.ensure_future(self._slots.acquire())
        stopping = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({acquire, stopping}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopping.cancel()
            if not acquire.done():
                acquire.cancel()
        await asyncio.gather(acquire, return_exceptions=True)
        if acquire.cancelled():
            return False
        if self._stopping.is_set():
            self._slots.release()
            return False
        return True

    async def drain(self):
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run_once(self):
        started = await self.run_cycle()
        await self.drain()
        return started

    async def run(self):
        """Run until stop(). StoreUnavailable from the startup check is fatal."""
        self.store.check()
        observer = self._start_observer() if self.mode == "notify" else None
        log.info(f"[watch] watching {self.store.root} mode={self.mode} "
                 f"interval={self.poll_interval}s max_in_flight={self.max_in_flight}")
        try:
            while not self._stopping.is_set():
                self._wake.clear()
                await self.run_cycle()
                try:
                    await asyncio.wait_for(self._wake.wait(), self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            if observer is not None:
                observer.stop()
                observer.join(timeout=5)
            await self._shutdown()

    def stop(self):
        """Stop initiating claims. run() then drains what is in flight."""
        if not self._stopping.is_set():
            log.info("[watch] shutdown requested")
        self._stopping.set()
        self._wake.set()

    def _start_observer(self):
        loop = asyncio.get_running_loop()

        def wake():
            loop.call_soon_threadsafe(self._wake.set)

        observer = self.observer_factory()
        observer.schedule(MailboxChangeHandler(wake), self.store.root, recursive=False)
        observer.start()
        return observer

    async def _shutdown(self):
        if not self._tasks:
            return
        log.info(f"[watch] waiting up to {self.shutdown_grace}s for {len(self._tasks)} in-flight request(s)")
        done, pending = await asyncio.wait(list(self._tasks), timeout=self.shutdown_grace)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _respond(self, request, context):
        result = self.responder(request, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _renew_lease(self, request_id):
        interval = self.claim_ttl / 3
        while True:
            await asyncio.sleep(interval)
            if not self.claims.touch(request_id):
                log.warning(f"[watch] lost the claim on {request_id}")
                return

    async def _process(self, request_id):
        t0 = time.time()
        lease = None
        if self.claim_ttl and self.claim_ttl > 0:
            lease = asyncio.create_task(self._renew_lease(request_id))
        try:
            request = self.store.get_claimed(request_id)
            context = None
            if self.context_builder is not None:
                context = self.context_builder.fetch(request.profile_id)
            response = await self._respond(request, context)
            if not isinstance(response, str) or not response:
                raise ValueError(f"responder returned no text for {request_id}")
            metadata = {"agentId": request.agent_id}
            delivered = await self.dispatcher.dispatch(request_id, response, metadata)
            self.dispatcher.settle(request_id, delivered)
        except asyncio.CancelledError:
            if self.claims.unclaim(request_id):
                self._record(request_id, "requeued", {"reason": "shutdown"})
                log.warning(f"[watch] {request_id} cancelled, returned to queue")
            raise
        except (ReadError, PersistError) as e:
            log.error(f"[watch] {request_id} failed: {e}")
            self._park(request_id, type(e).__name__)
        except Exception as e:
            log.exception(f"[watch] {request_id} responder failed: {e}")
            self._park(request_id, "responder_failed")
        else:
            ms = int((time.time() - t0) * 1000)
            log.info(f"[watch] {request_id} done in {ms}ms delivered={delivered}")
        finally:
            if lease is not None:
                lease.cancel()
            self._active.discard(request_id)
            self._slots.release()

    def _park(self, request_id, reason):
        if self.claims.park(request_id):
            self._record(request_id, "dead_letter", {"reason": reason})
