"""
Change notification carried by the change feed.
"""
import enum
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional


class ChangeKind(str, enum.Enum):
    """Kind of row change observed on the deliveries table."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeNotification:
    """
    Deliveries of ``board_date`` changed.

    Notifications are hints: receivers re-fetch the whole day rather than
    applying the change, so a lost or duplicated notification is harmless.
    """

    board_date: date
    kind: ChangeKind = ChangeKind.UPDATE
    record_id: Optional[str] = None
    origin: Optional[str] = None
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        return json.dumps(
            {
                "board_date": self.board_date.isoformat(),
                "kind": self.kind.value,
                "record_id": self.record_id,
                "origin": self.origin,
                "emitted_at": self.emitted_at.isoformat(),
            }
        )

    @classmethod
    def from_json(cls, payload: str) -> "ChangeNotification":
        data = json.loads(payload)
        return cls(
            board_date=date.fromisoformat(data["board_date"]),
            kind=ChangeKind(data.get("kind", ChangeKind.UPDATE.value)),
            record_id=data.get("record_id"),
            origin=data.get("origin"),
            emitted_at=datetime.fromisoformat(data["emitted_at"])
            if data.get("emitted_at")
            else datetime.now(timezone.utc),
        )
