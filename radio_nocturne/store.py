"""Story persistence. The generator only calls ``save`` once an attempt settles."""

import json
from pathlib import Path
from typing import List, Protocol

from loguru import logger

from .models.story import StoryRecord


class StoryStore(Protocol):
    def save(self, record: StoryRecord) -> None: ...


class JsonlStoryStore:
    """Append-only JSON Lines file, one story per line."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def save(self, record: StoryRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")
        logger.debug(f"Saved story {record.id} to {self.path}")

    def load(self) -> List[StoryRecord]:
        if not self.path.exists():
            return []
        records = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(StoryRecord(**json.loads(line)))
                except (ValueError, TypeError) as e:
                    logger.warning(f"Skipping malformed story record at {self.path}:{line_no}: {e}")
        return records
