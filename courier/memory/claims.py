"""Claim protocol: a rename inside the mailbox directory is the mutex.

os.rename is atomic within one filesystem, so when several consumers race to
rename the same `<id>.json`, exactly one finds the source still there.
"""

import logging
import os
import time

from courier.errors import AlreadyClaimed, ReadError

log = logging.getLogger(__name__)


class ClaimCoordinator:
    def __init__(self, store):
        self.store = store

    def claim(self, request_id):
        source = self.store.pending_path(request_id)
        target = self.store.claimed_path(request_id)
        try:
            os.rename(source, target)
        except FileNotFoundError as e:
            raise AlreadyClaimed(request_id) from e
        # The mtime stamp starts the lease. A claim that vanished before it
        # landed was reclaimed as stale and belongs to nobody.
        try:
            os.utime(target)
        except FileNotFoundError as e:
            raise AlreadyClaimed(request_id) from e
        log.debug(f"[claim] {request_id} claimed")
        return target

    def release(self, request_id):
        try:
            os.unlink(self.store.claimed_path(request_id))
        except FileNotFoundError:
            return False
        log.debug(f"[claim] {request_id} released")
        return True

    def unclaim(self, request_id):
        """Put a claimed request back in the queue."""
        return self._move(self.store.claimed_path(request_id), self.store.pending_path(request_id))

    def park(self, request_id):
        """Move a claimed request aside as a dead letter."""
        moved = self._move(self.store.claimed_path(request_id), self.store.dead_path(request_id))
        if moved:
            log.warning(f"[claim] {request_id} parked as dead letter")
        return moved

    def requeue(self, request_id):
        if not self._move(self.store.dead_path(request_id), self.store.pending_path(request_id)):
            raise ReadError(f"no dead letter for {request_id}")
        log.info(f"[claim] {request_id} requeued")

    def discard(self, request_id):
        try:
            os.unlink(self.store.dead_path(request_id))
        except FileNotFoundError:
            return False
        return True

    def is_claimed(self, request_id):
        return os.path.exists(self.store.claimed_path(request_id))

    def list_claimed(self):
        return self.store.list_claimed()

    def list_dead(self):
        return self.store.list_dead()

    def touch(self, request_id):
        """Renew the lease on a claim. False if the claim is gone."""
        try:
            os.utime(self.store.claimed_path(request_id))
        except FileNotFoundError:
            return False
        return True

    def claimed_at(self, request_id):
        return os.stat(self.store.claimed_path(request_id)).st_mtime

    def reclaim_expired(self, ttl_seconds, now=None, skip=()):
        """Return claims older than ttl_seconds to the queue.

        Ids in `skip` are claims the caller is still working on.
        """
        if not ttl_seconds or ttl_seconds <= 0:
            return []
        now = time.time() if now is None else now
        reclaimed = []
        for request_id in self.list_claimed():
            if request_id in skip:
                continue
            try:
                age = now - self.claimed_at(request_id)
            except FileNotFoundError:
                continue
            if age < ttl_seconds:
                continue
            if self._reclaim(request_id, ttl_seconds, now):
                log.warning(f"[claim] {request_id} lease expired after {int(age)}s, returned to queue")
                reclaimed.append(request_id)
        return reclaimed

    def _reclaim(self, request_id, ttl_seconds, now):
        # Take the marker under a private name first; a racing reclaimer
        # loses the rename and skips.
        claimed = self.store.claimed_path(request_id)
        holding = self.store.reclaim_path(request_id)
        try:
            os.rename(claimed, holding)
        except FileNotFoundError:
            return False
        if now - os.stat(holding).st_mtime < ttl_seconds:
            # renewed between the age check and the rename
            os.rename(holding, claimed)
            return False
        if not self._move(holding, self.store.pending_path(request_id)):
            os.rename(holding, self.store.dead_path(request_id))
            log.warning(f"[claim] {request_id} could not be returned to queue, parked as dead letter")
            return False
        return True

    def _move(self, source, target):
        if os.path.exists(target):
            log.warning(f"[claim] not moving {os.path.basename(source)}: {os.path.basename(target)} exists")
            return False
        try:
            os.rename(source, target)
        except FileNotFoundError:
            return False
        return True
