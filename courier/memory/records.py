"""Record types shared by the mailbox, response store and context builder.

Records live on disk as JSON with camelCase keys; in Python they are plain
dataclasses with snake_case fields.
"""

import json
import math
import os
import tempfile
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from courier.errors import ParseError, PersistError, ReadError


def now_ms() -> int:
    return int(time.time() * 1000)


def validate_id(request_id) -> str:
    """Ids double as filename stems, so they must be safe path components."""
    if not isinstance(request_id, str) or not request_id:
        raise ParseError(f"invalid request id: {request_id!r}")
    if request_id.startswith(".") or "/" in request_id or "\\" in request_id or "\0" in request_id:
        raise ParseError(f"invalid request id: {request_id!r}")
    return request_id


@dataclass
class Request:
    id: str
    content: str
    timestamp: int
    agent_id: str = "unified"
    metadata: dict = field(default_factory=dict)

    @property
    def profile_id(self) -> Optional[str]:
        return self.metadata.get("profileId") or None

    @classmethod
    def from_dict(cls, request_id, data):
        if not isinstance(data, dict):
            raise ParseError(f"request {request_id} is not a JSON object")
        timestamp = data.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise ParseError(f"request {request_id} has no numeric timestamp")
        if not math.isfinite(timestamp):
            raise ParseError(f"request {request_id} timestamp is not finite: {timestamp}")
        # Older writers used "message" or "text" for the body.
        content = data.get("content", data.get("message", data.get("text", "")))
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ParseError(f"request {request_id} metadata is not an object")
        return cls(
            id=request_id,
            content=str(content),
            timestamp=int(timestamp),
            agent_id=str(data.get("agentId") or "unified"),
            metadata=metadata,
        )

    def to_dict(self):
        return {
            "id": self.id,
            "agentId": self.agent_id,
            "content": self.content,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }


@dataclass
class Response:
    request_id: str
    response: str
    timestamp: int
    source: str
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise ParseError("response record is not a JSON object")
        try:
            return cls(
                request_id=data["requestId"],
                response=data["response"],
                timestamp=int(data["timestamp"]),
                source=data["source"],
                metadata=data.get("metadata") or {},
            )
        except (KeyError, TypeError, ValueError, OverflowError) as e:
            raise ParseError(f"malformed response record: {e}") from e

    def to_dict(self):
        return {
            "requestId": self.request_id,
            "response": self.response,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
            "source": self.source,
        }


@dataclass
class Context:
    profile_id: Optional[str]
    profile: Optional[str] = None
    challenges: list = field(default_factory=list)
    todos: Optional[Any] = None


def read_json(path):
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except UnicodeDecodeError as e:
        raise ParseError(f"{os.path.basename(path)} is not UTF-8: {e}") from e
    except FileNotFoundError as e:
        raise ReadError(f"{os.path.basename(path)} not found") from e
    except OSError as e:
        raise ReadError(f"cannot read {path}: {e}") from e
    try:
        return json.loads(raw)
    except ValueError as e:
        raise ParseError(f"malformed JSON in {os.path.basename(path)}: {e}") from e


def write_json(path, data):
    """Write JSON durably: temp file in the same directory, fsync, rename over."""
    directory = os.path.dirname(path) or "."
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
    except (OSError, TypeError, ValueError) as e:
        raise PersistError(f"cannot write {path}: {e}") from e
