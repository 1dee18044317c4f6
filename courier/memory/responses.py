"""Response store — one durable `resp-<id>.json` per request, last write wins."""

import logging
import os

from courier.memory.records import Response, now_ms, read_json, validate_id, write_json

log = logging.getLogger(__name__)


class ResponseStore:
    def __init__(self, root, source="worker"):
        self.root = os.fspath(root)
        self.source = source

    def path(self, request_id):
        return os.path.join(self.root, f"resp-{validate_id(request_id)}.json")

    def persist(self, request_id, response, metadata=None):
        """Write the response and fsync it before returning."""
        record = Response(
            request_id=request_id,
            response=response,
            timestamp=now_ms(),
            source=self.source,
            metadata=dict(metadata or {}),
        )
        write_json(self.path(request_id), record.to_dict())
        log.debug(f"[responses] persisted {request_id} ({len(response)} chars)")
        return record

    def get(self, request_id):
        return Response.from_dict(read_json(self.path(request_id)))

    def exists(self, request_id):
        return os.path.exists(self.path(request_id))
