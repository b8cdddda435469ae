from __future__ import annotations

import unittest
from unittest.mock import AsyncMock, MagicMock

from fake_backend import FakeBackend, fail, ok

from chatengine.engine.change_sets import ChangeSetService, ChangeSetStore
from chatengine.engine.errors import BackendTransportError
from chatengine.shared.models.change_set import (
    ChangeFileType,
    ChangeSet,
    ChangeSetStatus,
)

CID = "conv-1"
SPACE = "space-1"


def _cs(change_set_id: str, status: str = "applied", **extra) -> dict:
    return {
        "id": change_set_id,
        "spaceId": SPACE,
        "conversationId": CID,
        "status": status,
        **extra,
    }


def test_summary_is_derived_from_files_when_missing() -> None:
    change_set = ChangeSet.from_dict(_cs("cs-1", files=[
        {"id": "f1", "path": "/repo/a.py", "type": "create",
         "stats": {"added": 10, "removed": 0}},
        {"id": "f2", "path": "/repo/b.py", "stats": {"added": 2, "removed": 3}},
    ]))
    assert change_set.total_files == 2
    assert change_set.total_added == 12
    assert change_set.total_removed == 3
    assert change_set.files[0].type is ChangeFileType.CREATE
    assert change_set.files[1].file_name == "b.py"


def test_store_splice_replaces_by_id_or_appends() -> None:
    store = ChangeSetStore()
    store.replace(CID, [ChangeSet.from_dict(_cs("cs-1")), ChangeSet.from_dict(_cs("cs-2"))])
    store.splice(CID, ChangeSet.from_dict(_cs("cs-1", status="rolled_back")))
    store.splice(CID, ChangeSet.from_dict(_cs("cs-3")))

    change_sets = store.get(CID)
    assert [cs.id for cs in change_sets] == ["cs-1", "cs-2", "cs-3"]
    assert change_sets[0].status is ChangeSetStatus.ROLLED_BACK


def test_store_remove_space() -> None:
    store = ChangeSetStore()
    store.replace(CID, [ChangeSet.from_dict(_cs("cs-1"))])
    store.remove_space("other-space")
    assert CID in store
    store.remove_space(SPACE)
    assert CID not in store


class TestChangeSetService(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.backend = FakeBackend()
        self.store = ChangeSetStore()
        self.notify = MagicMock()
        self.refresh = AsyncMock()
        self.service = ChangeSetService(
            self.backend, self.store, self.notify, self.refresh,
        )

    async def test_load_replaces_list(self):
        self.backend.list_change_sets.return_value = ok([_cs("cs-1")])
        result = await self.service.load(SPACE, CID)
        self.assertEqual([cs.id for cs in result], ["cs-1"])
        self.notify.assert_called_once()

    async def test_failed_load_keeps_cached_list(self):
        self.store.replace(CID, [ChangeSet.from_dict(_cs("cs-old"))])
        self.backend.list_change_sets.return_value = fail("db error")
        result = await self.service.load(SPACE, CID)
        self.assertEqual([cs.id for cs in result], ["cs-old"])
        self.notify.assert_not_called()

    async def test_accept_splices_returned_change_set(self):
        self.store.replace(CID, [ChangeSet.from_dict(_cs("cs-1"))])
        self.backend.accept_change_set.return_value = ok(_cs("cs-1", messageId="m1"))
        accepted = await self.service.accept(SPACE, CID, "cs-1", "/repo/a.py")

        self.assertEqual(accepted.message_id, "m1")
        self.backend.accept_change_set.assert_awaited_once_with(
            SPACE, CID, "cs-1", "/repo/a.py",
        )
        self.backend.list_change_sets.assert_not_awaited()

    async def test_rejected_accept_reloads(self):
        self.backend.accept_change_set.return_value = fail("stale")
        self.backend.list_change_sets.return_value = ok([_cs("cs-1")])
        self.assertIsNone(await self.service.accept(SPACE, CID, "cs-1"))
        self.backend.list_change_sets.assert_awaited_once()
        self.assertEqual([cs.id for cs in self.store.get(CID)], ["cs-1"])

    async def test_rollback_refreshes_artifacts(self):
        self.backend.rollback_change_set.return_value = ok({
            "changeSet": _cs("cs-1", status="rolled_back"),
            "conflicts": [],
        })
        result = await self.service.rollback(SPACE, CID, "cs-1")

        self.assertIs(result.change_set.status, ChangeSetStatus.ROLLED_BACK)
        self.assertEqual(result.conflicts, [])
        self.refresh.assert_awaited_once_with(SPACE)
        self.assertIs(self.store.get(CID)[0].status, ChangeSetStatus.ROLLED_BACK)

    async def test_rollback_conflicts_are_reported(self):
        self.backend.rollback_change_set.return_value = ok({
            "changeSet": None,
            "conflicts": ["/repo/a.py"],
        })
        result = await self.service.rollback(SPACE, CID, "cs-1", force=False)
        self.assertIsNone(result.change_set)
        self.assertEqual(result.conflicts, ["/repo/a.py"])
        self.refresh.assert_not_awaited()

    async def test_rollback_transport_error_reloads(self):
        self.backend.rollback_change_set.side_effect = BackendTransportError(
            "POST", "/rollback", "timed out",
        )
        result = await self.service.rollback(SPACE, CID, "cs-1")
        self.assertIsNone(result.change_set)
        self.assertEqual(result.conflicts, [])
        self.backend.list_change_sets.assert_awaited_once_with(SPACE, CID)

    async def test_refresh_failure_does_not_fail_rollback(self):
        self.refresh.side_effect = RuntimeError("explorer gone")
        self.backend.rollback_change_set.return_value = ok({
            "changeSet": _cs("cs-1", status="partial_rollback"),
        })
        result = await self.service.rollback(SPACE, CID, "cs-1")
        self.assertIs(result.change_set.status, ChangeSetStatus.PARTIAL_ROLLBACK)
