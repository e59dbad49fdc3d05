"""Transport-agnostic message envelope handed to the router."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

# Signals that the processing attempt for a delivery has finished
Acknowledge = Callable[[], None]


@dataclass(slots=True)
class Delivery:
    """One raw message as received from the transport.

    ``value`` is the undecoded change envelope; ``None`` or empty bytes is a
    tombstone.
    """

    topic: str
    partition: int
    offset: int
    key: bytes | None
    value: bytes | None
    raw: Any = field(default=None, repr=False)  # original transport message
