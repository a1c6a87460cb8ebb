"""Tests for sync_job.py"""

import asyncio
import sqlite3
from unittest.mock import AsyncMock

import pytest

from vaultsync.core.dates import parse_date_time
from vaultsync.core.frontmatter import parse_front_matter
from vaultsync.core.settings import SyncSettings
from vaultsync.core.storage import SettingsStore
from vaultsync.core.sync_job import (
    BATCH_SIZE,
    SyncEvent,
    SyncEventType,
    SyncJob,
    SyncReconciler,
    SyncStatus,
    duplicate_title_notice,
    reset_syncing_state,
)
from vaultsync.core.template import render_item_content
from vaultsync.core.vault import LocalVault, VaultFileExistsError
from vaultsync.providers.content_types import Highlight, Item, Label, PageType
from vaultsync.providers.omnivore import AttachmentError, OmnivoreError

NOTE_PATH = "Omnivore/2023-02-18/Test Article.md"


def make_item(item_id="item-1", **overrides) -> Item:
    data = dict(
        id=item_id,
        title="Test Article",
        url=f"https://omnivore.app/me/{item_id}",
        saved_at="2023-02-18T13:02:08",
        slug=item_id,
        original_url="https://example.com/post",
        labels=(Label(name="research"),),
        highlights=(Highlight(id=f"{item_id}-hl", quote="first highlight"),),
    )
    data.update(overrides)
    return Item(**data)


class FakeSource:
    """Remote library returning canned pages and recording search calls."""

    def __init__(self, *pages):
        self.pages = list(pages)
        self.calls = []

    async def search(self, **kwargs):
        self.calls.append(kwargs)
        page = self.pages[len(self.calls) - 1]
        if isinstance(page, Exception):
            raise page
        has_next = len(self.calls) < len(self.pages)
        return list(page), has_next

    async def delete(self, item_id):
        return True


@pytest.fixture
def store():
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    s = SettingsStore(conn=conn)
    s.init()
    return s


@pytest.fixture
def settings():
    return SyncSettings(api_key="secret")


@pytest.fixture
def vault(tmp_path):
    return LocalVault(tmp_path)


async def collect(reconciler, manual=True):
    return [event async for event in reconciler.run(manual=manual)]


def event_types(events):
    return [e.type for e in events]


def section(path, root, item_id):
    """The ``%%id_start%%`` .. ``%%id_end%%`` span of an aggregate note."""
    content = (root / path).read_text(encoding="utf-8")
    start = content.index(f"%%{item_id}_start%%")
    end = content.index(f"%%{item_id}_end%%") + len(f"%%{item_id}_end%%")
    return content[start:end]


class BlockingSource(FakeSource):
    """FakeSource whose search waits until released."""

    def __init__(self, *pages):
        super().__init__(*pages)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def search(self, **kwargs):
        self.entered.set()
        await self.release.wait()
        return await super().search(**kwargs)


class TestSyncJob:
    """Tests for the run record."""

    def test_to_dict(self):
        job = SyncJob(id="run-1", status=SyncStatus.RUNNING, items_created=2, items_failed=1)
        d = job.to_dict()
        assert d["status"] == "running"
        assert d["items_processed"] == 3
        assert d["finished_at"] is None

    def test_event_to_sse(self):
        event = SyncEvent(type=SyncEventType.ITEM_CREATED, job_id="run-1", data={"path": "a.md"})
        sse = event.to_sse()
        assert sse.startswith("event: item_created\n")
        assert '"path": "a.md"' in sse
        assert sse.endswith("\n\n")


class TestSeparateFiles:
    """Tests for one note per item."""

    @pytest.mark.asyncio
    async def test_creates_note(self, settings, vault, tmp_path, store):
        reconciler = SyncReconciler(settings, vault, FakeSource([make_item()]), store=store)

        events = await collect(reconciler)

        assert event_types(events) == [
            SyncEventType.STARTED,
            SyncEventType.PAGE,
            SyncEventType.ITEM_CREATED,
            SyncEventType.COMPLETED,
        ]
        expected = render_item_content(make_item(), settings).content
        assert (tmp_path / NOTE_PATH).read_text(encoding="utf-8") == expected
        assert reconciler.job.status == SyncStatus.SUCCEEDED
        assert settings.sync_at
        assert settings.syncing is False
        assert SyncSettings.load(store).sync_at == settings.sync_at
        assert store.list_runs()[0]["status"] == "succeeded"

    @pytest.mark.asyncio
    async def test_second_sync_is_unchanged(self, settings, vault, tmp_path):
        await SyncReconciler(settings, vault, FakeSource([make_item()])).sync()
        before = (tmp_path / NOTE_PATH).stat().st_mtime_ns

        job = await SyncReconciler(settings, vault, FakeSource([make_item()])).sync()

        assert job.items_unchanged == 1
        assert job.items_created == job.items_updated == 0
        assert (tmp_path / NOTE_PATH).stat().st_mtime_ns == before

    @pytest.mark.asyncio
    async def test_changed_item_overwrites(self, settings, vault, tmp_path):
        await SyncReconciler(settings, vault, FakeSource([make_item()])).sync()
        changed = make_item(highlights=(Highlight(id="hl-2", quote="second highlight"),))

        job = await SyncReconciler(settings, vault, FakeSource([changed])).sync()

        assert job.items_updated == 1
        content = (tmp_path / NOTE_PATH).read_text(encoding="utf-8")
        assert "second highlight" in content
        assert "first highlight" not in content

    @pytest.mark.asyncio
    async def test_file_without_id_is_same_record(self, settings, vault, tmp_path):
        await vault.create(NOTE_PATH, "hand written note")

        job = await SyncReconciler(settings, vault, FakeSource([make_item()])).sync()

        assert job.items_updated == 1
        assert parse_front_matter((tmp_path / NOTE_PATH).read_text(encoding="utf-8"))["id"] == "item-1"

    @pytest.mark.asyncio
    async def test_title_collision_writes_disambiguated_file(self, settings, vault, tmp_path):
        original = "---\nid: other-item\n---\n\nsomeone else's note"
        await vault.create(NOTE_PATH, original)

        job = await SyncReconciler(settings, vault, FakeSource([make_item()])).sync()

        assert job.items_created == 1
        assert (tmp_path / NOTE_PATH).read_text(encoding="utf-8") == original
        second = tmp_path / "Omnivore/2023-02-18/Test Article-item-1.md"
        assert parse_front_matter(second.read_text(encoding="utf-8"))["id"] == "item-1"

        # And the disambiguated file is stable on the next run
        job = await SyncReconciler(settings, vault, FakeSource([make_item()])).sync()
        assert job.items_unchanged == 1

    @pytest.mark.asyncio
    async def test_create_race_becomes_warning(self, settings, tmp_path):
        class RacingVault(LocalVault):
            async def create(self, path, content):
                raise VaultFileExistsError(path)

        reconciler = SyncReconciler(settings, RacingVault(tmp_path), FakeSource([make_item()]))
        events = await collect(reconciler)

        warnings = [e for e in events if e.type == SyncEventType.WARNING]
        assert len(warnings) == 1
        assert warnings[0].data["message"] == duplicate_title_notice(NOTE_PATH)
        assert reconciler.job.warnings == [duplicate_title_notice(NOTE_PATH)]
        assert reconciler.job.status == SyncStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_bad_item_does_not_stop_the_run(self, settings, vault, tmp_path):
        items = [make_item("bad", title="Broken", saved_at="not a date"), make_item()]

        events = await collect(SyncReconciler(settings, vault, FakeSource(items)))

        assert SyncEventType.ITEM_FAILED in event_types(events)
        assert event_types(events)[-1] == SyncEventType.COMPLETED
        assert (tmp_path / NOTE_PATH).exists()

    @pytest.mark.asyncio
    async def test_template_error_fails_run(self, settings, vault):
        settings.template = "---\n- not\n- a mapping\n---\nbody"

        events = await collect(SyncReconciler(settings, vault, FakeSource([make_item()])))

        assert event_types(events)[-1] == SyncEventType.FAILED
        assert settings.sync_at == ""


class TestSingleFile:
    """Tests for aggregating items into one note."""

    @pytest.fixture
    def settings(self):
        return SyncSettings(api_key="secret", is_single_file=True, filename="Daily {{{date}}}")

    PATH = "Omnivore/2023-02-18/Daily 2023-02-18.md"

    @pytest.mark.asyncio
    async def test_items_share_one_note(self, settings, vault, tmp_path):
        first = make_item("item-1", title="First")
        second = make_item("item-2", title="Second")

        job = await SyncReconciler(settings, vault, FakeSource([first, second])).sync()

        assert job.items_created == 1
        assert job.items_updated == 1
        content = (tmp_path / self.PATH).read_text(encoding="utf-8")
        assert [e["id"] for e in parse_front_matter(content)] == ["item-2", "item-1"]
        assert content.index("%%item-2_start%%") < content.index("%%item-1_start%%")
        assert content.count("%%item-1_end%%") == 1

        job = await SyncReconciler(settings, vault, FakeSource([first, second])).sync()
        assert job.items_unchanged == 2

    @pytest.mark.asyncio
    async def test_updates_section_in_place(self, settings, vault, tmp_path):
        first = make_item("item-1", title="First")
        second = make_item("item-2", title="Second")
        await SyncReconciler(settings, vault, FakeSource([first, second])).sync()
        before = section(self.PATH, tmp_path, "item-2")

        changed = make_item(
            "item-1", title="First", highlights=(Highlight(id="new", quote="fresh highlight"),)
        )
        job = await SyncReconciler(settings, vault, FakeSource([changed])).sync()

        assert job.items_updated == 1
        content = (tmp_path / self.PATH).read_text(encoding="utf-8")
        assert "fresh highlight" in content
        assert "item-1-hl" not in content
        assert section(self.PATH, tmp_path, "item-2") == before
        assert [e["id"] for e in parse_front_matter(content)] == ["item-2", "item-1"]


class TestRunLifecycle:
    """Tests for single-flight, paging and sync_at handling."""

    @pytest.mark.asyncio
    async def test_busy_when_already_syncing(self, settings, vault):
        settings.syncing = True
        source = FakeSource([make_item()])

        events = await collect(SyncReconciler(settings, vault, source))

        assert event_types(events) == [SyncEventType.BUSY]
        assert source.calls == []
        assert settings.syncing is True

    @pytest.mark.asyncio
    async def test_second_run_busy_while_first_in_flight(self, settings, vault, tmp_path):
        source = BlockingSource([make_item()])
        reconciler = SyncReconciler(settings, vault, source)
        first = asyncio.create_task(collect(reconciler))
        await asyncio.wait_for(source.entered.wait(), timeout=1)
        in_flight = reconciler.job

        second = await collect(reconciler)
        other = await collect(SyncReconciler(settings, vault, FakeSource([make_item()])))

        assert event_types(second) == [SyncEventType.BUSY]
        assert event_types(other) == [SyncEventType.BUSY]
        assert reconciler.job is in_flight
        assert in_flight.status == SyncStatus.RUNNING

        source.release.set()
        events = await asyncio.wait_for(first, timeout=1)

        assert events[-1].type == SyncEventType.COMPLETED
        assert events[-1].job_id == in_flight.id
        assert len(source.calls) == 1
        assert settings.syncing is False
        assert (tmp_path / NOTE_PATH).exists()

    @pytest.mark.asyncio
    async def test_busy_sync_returns_idle_record(self, settings, vault):
        settings.syncing = True
        reconciler = SyncReconciler(settings, vault, FakeSource([make_item()]))

        job = await reconciler.sync()

        assert job.status == SyncStatus.IDLE
        assert reconciler.job is None

    @pytest.mark.asyncio
    async def test_invalid_settings_fail_before_start(self, vault, store):
        settings = SyncSettings(api_key="")
        source = FakeSource([make_item()])

        events = await collect(SyncReconciler(settings, vault, source, store=store))

        assert event_types(events) == [SyncEventType.FAILED]
        assert "API key" in events[0].data["error"]
        assert source.calls == []
        assert store.list_runs()[0]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_pages_until_exhausted(self, settings, vault):
        source = FakeSource([make_item("a", title="A")], [make_item("b", title="B")])

        job = await SyncReconciler(settings, vault, source).sync()

        assert [c["after"] for c in source.calls] == [0, BATCH_SIZE]
        assert all(c["first"] == BATCH_SIZE for c in source.calls)
        assert source.calls[0]["query"] == "in:all has:highlights"
        assert source.calls[0]["updated_since"] is None
        assert job.items_created == 2
        assert job.pages == 2

    @pytest.mark.asyncio
    async def test_sync_at_bounds_next_run(self, settings, vault):
        await SyncReconciler(settings, vault, FakeSource([])).sync()
        source = FakeSource([])

        await SyncReconciler(settings, vault, source).sync()

        assert source.calls[0]["updated_since"] == parse_date_time(settings.sync_at).isoformat()

    @pytest.mark.asyncio
    async def test_page_failure_keeps_sync_at(self, settings, vault, tmp_path, store):
        settings.sync_at = "2023-01-01T00:00:00"
        source = FakeSource([make_item()], OmnivoreError("boom"))
        reconciler = SyncReconciler(settings, vault, source, store=store)

        events = await collect(reconciler)

        assert event_types(events)[-1] == SyncEventType.FAILED
        assert events[-1].data["error"] == "boom"
        assert settings.sync_at == "2023-01-01T00:00:00"
        assert settings.syncing is False
        assert SyncSettings.load(store).syncing is False
        assert (tmp_path / NOTE_PATH).exists()

    @pytest.mark.asyncio
    async def test_content_requested_only_when_template_uses_it(self, settings, vault):
        source = FakeSource([])
        await SyncReconciler(settings, vault, source).sync()
        assert source.calls[0]["include_content"] is False

        settings.template = "{{{content}}}"
        source = FakeSource([])
        await SyncReconciler(settings, vault, source).sync()
        assert source.calls[0]["include_content"] is True


class TestAttachments:
    """Tests for FILE item downloads."""

    @pytest.fixture
    def settings(self):
        return SyncSettings(api_key="secret", template="# {{{title}}}\n{{{fileAttachment}}}")

    @pytest.mark.asyncio
    async def test_downloads_pdf_and_links_it(self, settings, vault, tmp_path):
        download = AsyncMock(return_value=b"%PDF-1.4")
        item = make_item(page_type=PageType.FILE, url="https://files.test/item-1.pdf")

        job = await SyncReconciler(settings, vault, FakeSource([item]), attachments=download).sync()

        download.assert_awaited_once_with("https://files.test/item-1.pdf")
        assert (tmp_path / "Omnivore/attachments/item-1.pdf").read_bytes() == b"%PDF-1.4"
        assert "Omnivore/attachments/item-1.pdf" in (tmp_path / NOTE_PATH).read_text(encoding="utf-8")
        assert job.items_created == 1

    @pytest.mark.asyncio
    async def test_existing_attachment_not_downloaded(self, settings, vault):
        await vault.create_binary("Omnivore/attachments/item-1.pdf", b"old")
        download = AsyncMock(return_value=b"new")
        item = make_item(page_type=PageType.FILE)

        await SyncReconciler(settings, vault, FakeSource([item]), attachments=download).sync()

        download.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_download_failure_is_warning(self, settings, vault, tmp_path):
        download = AsyncMock(side_effect=AttachmentError("gone"))
        item = make_item(page_type=PageType.FILE)
        reconciler = SyncReconciler(settings, vault, FakeSource([item]), attachments=download)

        events = await collect(reconciler)

        assert SyncEventType.WARNING in event_types(events)
        assert SyncEventType.ITEM_CREATED in event_types(events)
        assert reconciler.job.status == SyncStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_articles_never_downloaded(self, settings, vault):
        download = AsyncMock(return_value=b"")
        await SyncReconciler(settings, vault, FakeSource([make_item()]), attachments=download).sync()
        download.assert_not_awaited()


class TestResetSyncingState:
    def test_clears_stale_flag(self, store):
        settings = SyncSettings(syncing=True)
        reset_syncing_state(settings, store)
        assert settings.syncing is False
        assert SyncSettings.load(store).syncing is False
