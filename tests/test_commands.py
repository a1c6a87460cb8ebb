"""Tests for commands.py"""

import sqlite3
from unittest.mock import AsyncMock

import pytest

from vaultsync.commands import (
    CommandContext,
    delete_current_record,
    event_notice,
    resync_command,
    sync_command,
)
from vaultsync.core.settings import SyncSettings
from vaultsync.core.storage import SettingsStore
from vaultsync.core.sync_job import SyncEvent, SyncEventType
from vaultsync.core.vault import LocalVault
from vaultsync.providers.content_types import Item
from vaultsync.providers.omnivore import OmnivoreError


def make_item(item_id="item-1") -> Item:
    return Item(
        id=item_id,
        title="Test Article",
        url=f"https://omnivore.app/me/{item_id}",
        saved_at="2023-02-18T13:02:08",
        slug=item_id,
    )


class FakeSource:
    """Remote library stand-in with mocked search, delete and close."""

    def __init__(self, *pages, deleted=True):
        self.pages = list(pages) or [[]]
        self.search = AsyncMock(side_effect=self._search)
        self.delete = AsyncMock(return_value=deleted)
        self.close = AsyncMock()

    async def _search(self, **kwargs):
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return list(page), bool(self.pages)


@pytest.fixture
def store():
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    s = SettingsStore(conn=conn)
    s.init()
    return s


def make_context(tmp_path, store, source, **settings) -> CommandContext:
    return CommandContext(
        settings=SyncSettings(api_key="secret", **settings),
        vault=LocalVault(tmp_path),
        store=store,
        source_factory=lambda _settings: source,
    )


class TestSyncCommand:
    """Tests for sync notices."""

    @pytest.mark.asyncio
    async def test_manual_sync_notices(self, tmp_path, store):
        source = FakeSource([make_item()])
        context = make_context(tmp_path, store, source)

        notices = await sync_command(context)

        assert notices == ["Fetching articles ...", "Articles fetched"]
        source.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_scheduled_sync_is_quiet(self, tmp_path, store):
        context = make_context(tmp_path, store, FakeSource([make_item()]))
        assert await sync_command(context, manual=False) == []

    @pytest.mark.asyncio
    async def test_busy(self, tmp_path, store):
        context = make_context(tmp_path, store, FakeSource(), syncing=True)
        assert await sync_command(context) == ["Already syncing ..."]

    @pytest.mark.asyncio
    async def test_failure_notice(self, tmp_path, store):
        context = make_context(tmp_path, store, FakeSource(OmnivoreError("boom")))

        notices = await sync_command(context)

        assert notices == ["Fetching articles ...", "Failed to fetch articles: boom"]
        assert context.settings.syncing is False

    def test_item_failure_notice(self):
        event = SyncEvent(
            type=SyncEventType.ITEM_FAILED,
            job_id="run-1",
            data={"title": "Some title", "error": "Invalid date"},
        )
        assert event_notice(event) == "Failed to sync Some title: Invalid date"

    def test_silent_events(self):
        event = SyncEvent(type=SyncEventType.ITEM_CREATED, job_id="run-1")
        assert event_notice(event) is None


class TestResyncCommand:
    @pytest.mark.asyncio
    async def test_clears_sync_at(self, tmp_path, store):
        source = FakeSource()
        context = make_context(tmp_path, store, source, sync_at="2024-01-15T10:30:00")

        notices = await resync_command(context)

        assert notices == ["Fetching articles ...", "Articles fetched"]
        assert source.search.await_args.kwargs["updated_since"] is None
        assert context.settings.sync_at not in ("", "2024-01-15T10:30:00")

    @pytest.mark.asyncio
    async def test_refused_while_syncing(self, tmp_path, store):
        source = FakeSource()
        context = make_context(tmp_path, store, source, sync_at="2024-01-15T10:30:00", syncing=True)

        assert await resync_command(context) == ["Already syncing ..."]
        assert context.settings.sync_at == "2024-01-15T10:30:00"
        source.search.assert_not_awaited()


class TestDeleteCurrentRecord:
    """Tests for deleting a synced note."""

    PATH = "Omnivore/note.md"

    @pytest.mark.asyncio
    async def test_deletes_remote_and_local(self, tmp_path, store):
        source = FakeSource()
        context = make_context(tmp_path, store, source)
        await context.vault.create(self.PATH, "---\nid: item-1\n---\n\nbody")

        notices = await delete_current_record(context, self.PATH)

        source.delete.assert_awaited_once_with("item-1")
        source.close.assert_awaited_once()
        assert notices == [f"Deleted {self.PATH}"]
        assert not (tmp_path / self.PATH).exists()

    @pytest.mark.asyncio
    async def test_without_id_nothing_deleted(self, tmp_path, store):
        source = FakeSource()
        context = make_context(tmp_path, store, source)
        await context.vault.create(self.PATH, "just a note")

        notices = await delete_current_record(context, self.PATH)

        assert notices == ["Failed to delete article: article id not found"]
        source.delete.assert_not_awaited()
        assert (tmp_path / self.PATH).exists()

    @pytest.mark.asyncio
    async def test_remote_not_confirmed(self, tmp_path, store):
        context = make_context(tmp_path, store, FakeSource(deleted=False))
        await context.vault.create(self.PATH, "---\nid: item-1\n---\n\nbody")

        notices = await delete_current_record(context, self.PATH)

        assert notices == ["Failed to delete article in Omnivore", f"Deleted {self.PATH}"]
        assert not (tmp_path / self.PATH).exists()

    @pytest.mark.asyncio
    async def test_remote_error_still_deletes_locally(self, tmp_path, store):
        source = FakeSource()
        source.delete.side_effect = OmnivoreError("offline")
        context = make_context(tmp_path, store, source)
        await context.vault.create(self.PATH, "---\nid: item-1\n---\n\nbody")

        notices = await delete_current_record(context, self.PATH)

        assert notices == ["Failed to delete article in Omnivore", f"Deleted {self.PATH}"]
        assert not (tmp_path / self.PATH).exists()

    @pytest.mark.asyncio
    async def test_missing_note(self, tmp_path, store):
        context = make_context(tmp_path, store, FakeSource())

        notices = await delete_current_record(context, "missing.md")

        assert len(notices) == 1
        assert notices[0].startswith("Failed to delete article: ")
