"""Inbox — directory-backed queue of requests waiting for the worker.

The UI (or any other writer) drops one `<id>.json` per request into the
pending directory. The watch loop polls for pending requests and processes
them. Claimed and dead-lettered requests stay in the same directory under
dot-prefixed names, so they never show up as pending.
"""

import logging
import os
import uuid

from courier.errors import ReadError, StoreUnavailable
from courier.memory.records import Request, read_json, validate_id, write_json

log = logging.getLogger(__name__)

CLAIM_PREFIX = ".processing-"
DEAD_PREFIX = ".dead-"
RECLAIM_PREFIX = ".reclaim-"


class MailboxStore:
    def __init__(self, root):
        self.root = os.fspath(root)
        # (name, mtime) of malformed records already reported
        self._reported = set()

    def pending_path(self, request_id):
        return os.path.join(self.root, f"{validate_id(request_id)}.json")

    def claimed_path(self, request_id):
        return os.path.join(self.root, f"{CLAIM_PREFIX}{validate_id(request_id)}.json")

    def dead_path(self, request_id):
        return os.path.join(self.root, f"{DEAD_PREFIX}{validate_id(request_id)}.json")

    def reclaim_path(self, request_id):
        """Private name a stale claim passes through on its way back to pending."""
        return os.path.join(self.root, f"{RECLAIM_PREFIX}{validate_id(request_id)}-{uuid.uuid4().hex}.json")

    def check(self):
        """Make sure the mailbox exists and is writable. Called once at startup."""
        try:
            os.makedirs(self.root, exist_ok=True)
        except OSError as e:
            raise StoreUnavailable(f"cannot create mailbox {self.root}: {e}") from e
        if not os.access(self.root, os.R_OK | os.W_OK | os.X_OK):
            raise StoreUnavailable(f"mailbox {self.root} is not readable and writable")

    def _names(self):
        os.makedirs(self.root, exist_ok=True)
        return os.listdir(self.root)

    def pending(self):
        """Pending request records, oldest first (ties broken by id)."""
        try:
            names = self._names()
        except OSError as e:
            log.error(f"[inbox] cannot list {self.root}: {e}")
            return []

        requests = []
        for name in names:
            if not name.endswith(".json") or name.startswith("."):
                continue
            request_id = name[:-len(".json")]
            try:
                requests.append(self.get(request_id))
            except ReadError as e:
                # Claimed by someone else between listdir and read, or malformed.
                self._report_skipped(name, e)
        requests.sort(key=lambda r: (r.timestamp, r.id))
        return requests

    def _report_skipped(self, name, error):
        try:
            key = (name, os.stat(os.path.join(self.root, name)).st_mtime)
        except OSError:
            return
        if key in self._reported:
            log.debug(f"[inbox] still skipping {name}")
            return
        self._reported.add(key)
        log.warning(f"[inbox] skipping {name}: {error}")

    def list_pending(self):
        return [r.id for r in self.pending()]

    def get(self, request_id):
        return Request.from_dict(request_id, read_json(self.pending_path(request_id)))

    def get_claimed(self, request_id):
        return Request.from_dict(request_id, read_json(self.claimed_path(request_id)))

    def get_dead(self, request_id):
        return Request.from_dict(request_id, read_json(self.dead_path(request_id)))

    def put(self, request):
        """Deposit a request. Written atomically so listers never see half a file."""
        write_json(self.pending_path(request.id), request.to_dict())
        log.debug(f"[inbox] queued {request.id}")
        return request

    def _marked(self, prefix):
        try:
            names = self._names()
        except OSError as e:
            log.error(f"[inbox] cannot list {self.root}: {e}")
            return []
        return sorted(
            name[len(prefix):-len(".json")]
            for name in names
            if name.startswith(prefix) and name.endswith(".json")
        )

    def list_claimed(self):
        return self._marked(CLAIM_PREFIX)

    def list_dead(self):
        return self._marked(DEAD_PREFIX)
