"""Persisted story record handed to the store once an attempt settles."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from uuid import uuid4


@dataclass
class StoryRecord:
    topic: str = ""
    title: str = ""
    language: str = "vi"
    text: str = ""
    complete: bool = False
    id: str = field(default_factory=lambda: uuid4().hex)
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict:
        return asdict(self)
