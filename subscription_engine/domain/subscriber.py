"""Opaque subscriber identity."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SubscriberRef:
    """Stable ``{type, id}`` pair supplied by the host application.

    The engine never inspects a subscriber beyond this identity.
    """

    type: str
    id: str

    def __post_init__(self) -> None:
        if not self.type or not self.id:
            raise ValueError("Subscriber type and id are required")

    @property
    def key(self) -> str:
        return f"{self.type}:{self.id}"

    def __str__(self) -> str:  # pragma: no cover - debug helper
        return f"{self.type}#{self.id}"
