"""Change set models: file edits an agent run made, accepted or rolled back."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ChangeSetStatus(Enum):
    APPLIED = "applied"
    PARTIAL_ROLLBACK = "partial_rollback"
    ROLLED_BACK = "rolled_back"


class ChangeFileType(Enum):
    EDIT = "edit"
    CREATE = "create"
    DELETE = "delete"


class ChangeFileStatus(Enum):
    ACCEPTED = "accepted"
    ROLLED_BACK = "rolled_back"


@dataclass
class ChangeFile:
    id: str
    path: str
    relative_path: str
    file_name: str
    type: ChangeFileType = ChangeFileType.EDIT
    status: ChangeFileStatus = ChangeFileStatus.ACCEPTED
    before_exists: bool = True
    after_exists: bool = True
    before_content: str | None = None
    after_content: str | None = None
    before_hash: str | None = None
    after_hash: str | None = None
    added: int = 0
    removed: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeFile:
        stats = data.get("stats") or {}
        path = data.get("path", "")
        return cls(
            id=str(data.get("id", "")),
            path=path,
            relative_path=data.get("relativePath", path),
            file_name=data.get("fileName", path.rsplit("/", 1)[-1]),
            type=ChangeFileType(data.get("type", "edit")),
            status=ChangeFileStatus(data.get("status", "accepted")),
            before_exists=bool(data.get("beforeExists", True)),
            after_exists=bool(data.get("afterExists", True)),
            before_content=data.get("beforeContent"),
            after_content=data.get("afterContent"),
            before_hash=data.get("beforeHash"),
            after_hash=data.get("afterHash"),
            added=int(stats.get("added", 0)),
            removed=int(stats.get("removed", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "path": self.path,
            "relativePath": self.relative_path,
            "fileName": self.file_name,
            "type": self.type.value,
            "status": self.status.value,
            "beforeExists": self.before_exists,
            "afterExists": self.after_exists,
            "stats": {"added": self.added, "removed": self.removed},
        }
        for key, value in (
            ("beforeContent", self.before_content),
            ("afterContent", self.after_content),
            ("beforeHash", self.before_hash),
            ("afterHash", self.after_hash),
        ):
            if value is not None:
                d[key] = value
        return d


@dataclass
class ChangeSet:
    id: str
    space_id: str
    conversation_id: str
    created_at: str = ""
    status: ChangeSetStatus = ChangeSetStatus.APPLIED
    message_id: str | None = None
    files: list[ChangeFile] = field(default_factory=list)
    total_files: int = 0
    total_added: int = 0
    total_removed: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeSet:
        files = [ChangeFile.from_dict(f) for f in data.get("files") or []]
        summary = data.get("summary") or {}
        return cls(
            id=str(data.get("id", "")),
            space_id=data.get("spaceId", ""),
            conversation_id=data.get("conversationId", ""),
            created_at=data.get("createdAt", ""),
            status=ChangeSetStatus(data.get("status", "applied")),
            message_id=data.get("messageId"),
            files=files,
            total_files=int(summary.get("totalFiles", len(files))),
            total_added=int(summary.get("totalAdded", sum(f.added for f in files))),
            total_removed=int(
                summary.get("totalRemoved", sum(f.removed for f in files))
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "spaceId": self.space_id,
            "conversationId": self.conversation_id,
            "createdAt": self.created_at,
            "status": self.status.value,
            "summary": {
                "totalFiles": self.total_files,
                "totalAdded": self.total_added,
                "totalRemoved": self.total_removed,
            },
            "files": [f.to_dict() for f in self.files],
        }
        if self.message_id:
            d["messageId"] = self.message_id
        return d


@dataclass
class RollbackResult:
    change_set: ChangeSet | None = None
    conflicts: list[str] = field(default_factory=list)
