"""Relay session runtime context."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from time import time


class Transport(str, Enum):
    SSE = "sse"
    WEBSOCKET = "websocket"


def new_session_id(prefix: str = "relay") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


@dataclass(slots=True)
class RelaySession:
    session_id: str
    transport: Transport
    original_model_alias: str
    resolved_model_id: str
    created_at: float = field(default_factory=time)
    last_activity: float = field(default_factory=time)
    cancelled: bool = False

    def touch(self) -> None:
        self.last_activity = time()

    def cancel(self) -> None:
        self.cancelled = True
