"""Per-conversation change set cache and the accept/rollback round trips.

The backend owns change sets. Successful replies are spliced into the
cached list by id; anything else triggers a full re-fetch so the client
never keeps a locally invented state.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from chatengine.adapters.backend import ApiResponse, Backend
from chatengine.engine.config import ArtifactsRefresh
from chatengine.engine.errors import ChatEngineError
from chatengine.shared.models.change_set import ChangeSet, RollbackResult

logger = logging.getLogger(__name__)


def parse_change_sets(data: Any) -> list[ChangeSet] | None:
    if not isinstance(data, list):
        return None
    return [ChangeSet.from_dict(item) for item in data]


class ChangeSetStore:
    def __init__(self) -> None:
        self._by_conversation: dict[str, list[ChangeSet]] = {}

    def get(self, conversation_id: str) -> list[ChangeSet]:
        return list(self._by_conversation.get(conversation_id, []))

    def replace(self, conversation_id: str, change_sets: list[ChangeSet]) -> None:
        self._by_conversation[conversation_id] = list(change_sets)

    def splice(self, conversation_id: str, change_set: ChangeSet) -> None:
        """Swap in ``change_set`` by id, appending it if it is new."""
        existing = self._by_conversation.get(conversation_id, [])
        if any(cs.id == change_set.id for cs in existing):
            updated = [
                change_set if cs.id == change_set.id else cs for cs in existing
            ]
        else:
            updated = [*existing, change_set]
        self._by_conversation[conversation_id] = updated

    def remove(self, conversation_id: str) -> None:
        self._by_conversation.pop(conversation_id, None)

    def remove_space(self, space_id: str) -> None:
        for conversation_id, change_sets in list(self._by_conversation.items()):
            if any(cs.space_id == space_id for cs in change_sets):
                del self._by_conversation[conversation_id]

    def clear(self) -> None:
        self._by_conversation.clear()

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._by_conversation


class ChangeSetService:
    """Backend round trips for change sets, committing into a store."""

    def __init__(
        self,
        backend: Backend,
        store: ChangeSetStore,
        notify: Callable[[], None],
        artifacts_refresh: ArtifactsRefresh | None = None,
    ) -> None:
        self._backend = backend
        self._store = store
        self._notify = notify
        self._artifacts_refresh = artifacts_refresh

    async def load(self, space_id: str, conversation_id: str) -> list[ChangeSet]:
        try:
            response = await self._backend.list_change_sets(space_id, conversation_id)
            change_sets = parse_change_sets(response.data) if response.success else None
        except (ChatEngineError, ValueError, KeyError) as exc:
            logger.warning(
                "Failed to load change sets for %s: %s", conversation_id, exc,
            )
            return self._store.get(conversation_id)

        if change_sets is None:
            logger.warning(
                "Change set list for %s rejected: %s",
                conversation_id, response.error,
            )
            return self._store.get(conversation_id)
        self._store.replace(conversation_id, change_sets)
        self._notify()
        return change_sets

    async def accept(
        self,
        space_id: str,
        conversation_id: str,
        change_set_id: str,
        file_path: str | None = None,
    ) -> ChangeSet | None:
        try:
            response = await self._backend.accept_change_set(
                space_id, conversation_id, change_set_id, file_path,
            )
            if response.success and isinstance(response.data, dict):
                change_set = ChangeSet.from_dict(response.data)
                self._store.splice(conversation_id, change_set)
                self._notify()
                return change_set
            self._log_rejected("accept", change_set_id, response)
        except Exception:
            logger.exception("Accepting change set %s failed", change_set_id)

        await self.load(space_id, conversation_id)
        return None

    async def rollback(
        self,
        space_id: str,
        conversation_id: str,
        change_set_id: str,
        file_path: str | None = None,
        force: bool = False,
    ) -> RollbackResult:
        try:
            response = await self._backend.rollback_change_set(
                space_id, conversation_id, change_set_id, file_path, force,
            )
            if response.success and isinstance(response.data, dict):
                raw = response.data.get("changeSet")
                result = RollbackResult(
                    change_set=ChangeSet.from_dict(raw) if raw else None,
                    conflicts=list(response.data.get("conflicts") or []),
                )
                if result.change_set is not None:
                    self._store.splice(conversation_id, result.change_set)
                    self._notify()
                    if not result.conflicts:
                        await self._refresh_artifacts(space_id)
                elif result.conflicts:
                    logger.info(
                        "Rollback of %s blocked by conflicts: %s",
                        change_set_id, ", ".join(result.conflicts),
                    )
                return result
            self._log_rejected("rollback", change_set_id, response)
        except Exception:
            logger.exception("Rolling back change set %s failed", change_set_id)

        await self.load(space_id, conversation_id)
        return RollbackResult()

    async def _refresh_artifacts(self, space_id: str) -> None:
        if self._artifacts_refresh is None:
            return
        try:
            await self._artifacts_refresh(space_id)
        except Exception:
            logger.exception("Artifacts refresh for space %s failed", space_id)

    @staticmethod
    def _log_rejected(action: str, change_set_id: str, response: ApiResponse) -> None:
        logger.warning(
            "Backend rejected %s of change set %s: %s",
            action, change_set_id, response.error,
        )
