"""Sync run management.

Provides:
- SyncJob run record and SyncEvent for SSE streaming
- SyncReconciler.run() async generator that pages through the remote
  library and reconciles each item against the vault
- reset_syncing_state() for startup repair of a stale running flag
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Protocol

from vaultsync.core.dates import DATE_FORMAT, format_date, parse_date_time
from vaultsync.core.errors import ConfigurationError, TemplateError, VaultSyncError
from vaultsync.core.frontmatter import FrontMatter, extract, parse_front_matter
from vaultsync.core.paths import normalize_path
from vaultsync.core.template import (
    RenderedRecord,
    render_attachment_folder,
    render_filename,
    render_folder_name,
    render_item_content,
)
from vaultsync.core.vault import Vault, VaultFileExistsError
from vaultsync.providers.content_types import Item, PageType
from vaultsync.providers.omnivore import get_query_from_filter

if TYPE_CHECKING:
    from vaultsync.core.settings import SyncSettings
    from vaultsync.core.storage import SettingsStore

logger = logging.getLogger(__name__)

BATCH_SIZE = 50
CONTENT_FORMAT = "highlightedMarkdown"


class RemoteSource(Protocol):
    async def search(
        self,
        *,
        after: int,
        first: int,
        updated_since: str | None,
        query: str,
        include_content: bool,
        format: str,
    ) -> tuple[list[Item], bool]: ...

    async def delete(self, item_id: str) -> bool: ...


AttachmentDownloader = Callable[[str], Awaitable[bytes]]


class SyncStatus(str, Enum):
    """Status of a sync run."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SyncEventType(str, Enum):
    """Types of events emitted during a sync run."""

    STARTED = "started"
    BUSY = "busy"
    PAGE = "page"
    ITEM_CREATED = "item_created"
    ITEM_UPDATED = "item_updated"
    ITEM_UNCHANGED = "item_unchanged"
    ITEM_FAILED = "item_failed"
    WARNING = "warning"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SyncEvent:
    """Event emitted during a sync run for SSE streaming."""

    type: SyncEventType
    job_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_sse(self) -> str:
        """Format as Server-Sent Event."""
        event_data = {
            "type": self.type.value,
            "job_id": self.job_id,
            "timestamp": self.timestamp.isoformat(),
            **self.data,
        }
        return f"event: {self.type.value}\ndata: {json.dumps(event_data)}\n\n"


@dataclass
class SyncJob:
    """Tracks state of one sync run."""

    id: str
    status: SyncStatus = SyncStatus.IDLE
    manual: bool = True
    pages: int = 0
    items_created: int = 0
    items_updated: int = 0
    items_unchanged: int = 0
    items_failed: int = 0
    warnings: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    error: str | None = None

    def touch(self) -> None:
        """Update last_activity timestamp."""
        self.last_activity = datetime.now(timezone.utc)

    @property
    def items_processed(self) -> int:
        return self.items_created + self.items_updated + self.items_unchanged + self.items_failed

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "status": self.status.value,
            "manual": self.manual,
            "pages": self.pages,
            "items_created": self.items_created,
            "items_updated": self.items_updated,
            "items_unchanged": self.items_unchanged,
            "items_failed": self.items_failed,
            "items_processed": self.items_processed,
            "warnings": list(self.warnings),
            "started_at": self.started_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
        }


def duplicate_title_notice(path: str) -> str:
    return (
        f"Skipping file creation: {path}. Please check if you have duplicated "
        "article titles and delete the file if needed."
    )


def reset_syncing_state(settings: SyncSettings, store: SettingsStore) -> None:
    """Clear a running flag left behind by a process that died mid-sync."""
    if settings.syncing:
        logger.warning("Clearing stale syncing flag from a previous process")
    settings.syncing = False
    settings.save(store)


class SyncReconciler:
    """Mirrors the remote library into the vault, one run at a time.

    The ``syncing`` flag on the shared settings record is the single-flight
    guard. It is set before the first await of a run and cleared in a
    ``finally`` block.
    """

    def __init__(
        self,
        settings: SyncSettings,
        vault: Vault,
        source: RemoteSource,
        store: SettingsStore | None = None,
        attachments: AttachmentDownloader | None = None,
    ) -> None:
        self.settings = settings
        self.vault = vault
        self.source = source
        self.store = store
        self._download = attachments or getattr(source, "download_attachment", None)
        self.job: SyncJob | None = None

    def _save_settings(self) -> None:
        if self.store is not None:
            self.settings.save(self.store)

    def _record(self, job: SyncJob) -> None:
        job.touch()
        if self.store is not None:
            self.store.save_run(job.to_dict())

    async def sync(self, manual: bool = True) -> SyncJob:
        """Run to completion and return the run record.

        A run turned away as busy comes back with status IDLE.
        """
        job = SyncJob(id=str(uuid.uuid4()), manual=manual)
        async for event in self.run(manual=manual, job=job):
            logger.debug(f"Sync event: {event.type.value}")
        return job

    async def run(
        self,
        manual: bool = True,
        job: SyncJob | None = None,
    ) -> AsyncIterator[SyncEvent]:
        """Run one sync, yielding events for SSE streaming.

        A run that finds another one in progress yields a single BUSY event
        and leaves ``self.job`` pointing at the run in progress.
        ``sync_at`` only advances when every page was processed.
        """
        job = job or SyncJob(id=str(uuid.uuid4()), manual=manual)

        if self.settings.syncing:
            logger.info("Sync requested while another sync is running")
            yield SyncEvent(
                type=SyncEventType.BUSY,
                job_id=job.id,
                data={"message": "Already syncing"},
            )
            return

        self.job = job

        try:
            self.settings.validate()
        except ConfigurationError as e:
            logger.error(f"Sync not started: {e}")
            job.status = SyncStatus.FAILED
            job.error = str(e)
            job.finished_at = datetime.now(timezone.utc)
            self._record(job)
            yield SyncEvent(
                type=SyncEventType.FAILED,
                job_id=job.id,
                data={"error": str(e), **job.to_dict()},
            )
            return

        # Set before the first await so a concurrent trigger sees it
        self.settings.syncing = True
        self._save_settings()
        run_started = datetime.now().astimezone()
        job.status = SyncStatus.RUNNING
        self._record(job)

        try:
            log = logger.info if manual else logger.debug
            log(f"Starting sync since {self.settings.sync_at or 'the beginning'}")
            yield SyncEvent(
                type=SyncEventType.STARTED,
                job_id=job.id,
                data={"sync_at": self.settings.sync_at, **job.to_dict()},
            )

            async for event in self._sync_pages(job):
                yield event

            self.settings.sync_at = format_date(run_started, DATE_FORMAT)
            job.status = SyncStatus.SUCCEEDED
            job.finished_at = datetime.now(timezone.utc)
            log(
                f"Sync finished: {job.items_created} created, "
                f"{job.items_updated} updated, {job.items_failed} failed"
            )
            yield SyncEvent(
                type=SyncEventType.COMPLETED,
                job_id=job.id,
                data=job.to_dict(),
            )

        except Exception as e:
            logger.exception(f"Sync job {job.id} failed")
            job.status = SyncStatus.FAILED
            job.error = str(e)
            job.finished_at = datetime.now(timezone.utc)
            yield SyncEvent(
                type=SyncEventType.FAILED,
                job_id=job.id,
                data={"error": str(e), **job.to_dict()},
            )

        finally:
            self.settings.syncing = False
            self._save_settings()
            self._record(job)

    async def _sync_pages(self, job: SyncJob) -> AsyncIterator[SyncEvent]:
        settings = self.settings
        include_content = settings.uses_template_variable("content")
        include_file_attachment = settings.uses_template_variable("fileAttachment")

        since = parse_date_time(settings.sync_at)
        updated_since = since.isoformat() if since else None
        query = get_query_from_filter(settings.filter, settings.custom_query)

        after = 0
        has_next_page = True
        while has_next_page:
            items, has_next_page = await self.source.search(
                after=after,
                first=BATCH_SIZE,
                updated_since=updated_since,
                query=query,
                include_content=include_content,
                format=CONTENT_FORMAT,
            )
            job.pages += 1
            yield SyncEvent(
                type=SyncEventType.PAGE,
                job_id=job.id,
                data={"after": after, "count": len(items), "has_next_page": has_next_page},
            )

            attachments: dict[str, str] = {}
            if include_file_attachment:
                async for event in self._fetch_attachments(job, items, attachments):
                    yield event

            for item in items:
                yield await self._sync_item(job, item, attachments.get(item.id))
                self._record(job)

            after += BATCH_SIZE

    async def _fetch_attachments(
        self,
        job: SyncJob,
        items: list[Item],
        attachments: dict[str, str],
    ) -> AsyncIterator[SyncEvent]:
        files = [item for item in items if item.page_type == PageType.FILE]
        if not files:
            return
        # One slow or failing download must not cancel its siblings
        results = await asyncio.gather(
            *(self._acquire_attachment(item) for item in files),
            return_exceptions=True,
        )
        for item, result in zip(files, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                message = f"Failed to download attachment for {item.title}: {result}"
                logger.warning(message)
                job.warnings.append(message)
                yield SyncEvent(
                    type=SyncEventType.WARNING,
                    job_id=job.id,
                    data={"item_id": item.id, "message": message},
                )
            else:
                attachments[item.id] = result

    async def _acquire_attachment(self, item: Item) -> str:
        """Download a FILE item's PDF unless it is already in the vault."""
        settings = self.settings
        folder = normalize_path(
            render_attachment_folder(item, settings.attachment_folder, settings.folder_date_format)
        )
        path = normalize_path(f"{folder}/{item.id}.pdf")
        if await self.vault.file_exists(path):
            return path
        if self._download is None:
            raise VaultSyncError("No attachment downloader configured")
        if folder and not await self.vault.folder_exists(folder):
            await self.vault.create_folder(folder)
        data = await self._download(item.url)
        await self.vault.create_binary(path, data)
        logger.info(f"Saved attachment {path}")
        return path

    async def _sync_item(self, job: SyncJob, item: Item, attachment: str | None) -> SyncEvent:
        data: dict[str, Any] = {"item_id": item.id, "title": item.title[:50]}
        try:
            event_type, path = await self._reconcile_item(item, attachment)
        except ConfigurationError:
            raise
        except VaultFileExistsError as e:
            message = duplicate_title_notice(e.path)
            logger.warning(message)
            job.warnings.append(message)
            return SyncEvent(
                type=SyncEventType.WARNING,
                job_id=job.id,
                data={**data, "path": e.path, "message": message},
            )
        except (VaultSyncError, ValueError) as e:
            logger.warning(f"Failed to sync {item.id} ({item.title}): {e}")
            job.items_failed += 1
            return SyncEvent(
                type=SyncEventType.ITEM_FAILED,
                job_id=job.id,
                data={**data, "error": str(e), **job.to_dict()},
            )

        if event_type == SyncEventType.ITEM_CREATED:
            job.items_created += 1
        elif event_type == SyncEventType.ITEM_UPDATED:
            job.items_updated += 1
        else:
            job.items_unchanged += 1
        return SyncEvent(type=event_type, job_id=job.id, data={**data, "path": path})

    async def _reconcile_item(
        self,
        item: Item,
        attachment: str | None,
    ) -> tuple[SyncEventType, str]:
        settings = self.settings
        folder = normalize_path(
            render_folder_name(item, settings.folder, settings.folder_date_format)
        )
        if folder and not await self.vault.folder_exists(folder):
            await self.vault.create_folder(folder)

        record = render_item_content(item, settings, attachment)
        filename = render_filename(item, settings.filename, settings.filename_date_format)
        path = normalize_path(f"{folder}/{filename}.md")

        if settings.is_single_file:
            return await self._reconcile_single_file(path, record), path
        return await self._reconcile_separate_file(path, folder, filename, record)

    async def _write(self, path: str, content: str) -> SyncEventType:
        if not await self.vault.file_exists(path):
            await self.vault.create(path, content)
            return SyncEventType.ITEM_CREATED
        existing = await self.vault.read(path)
        if existing == content:
            return SyncEventType.ITEM_UNCHANGED
        await self.vault.modify(path, content)
        return SyncEventType.ITEM_UPDATED

    async def _reconcile_separate_file(
        self,
        path: str,
        folder: str,
        filename: str,
        record: RenderedRecord,
    ) -> tuple[SyncEventType, str]:
        if await self.vault.file_exists(path):
            value = parse_front_matter(await self.vault.read(path))
            existing_id = value.get("id") if isinstance(value, dict) else None
            if existing_id and str(existing_id) != record.item_id:
                # Another item renders to the same name
                path = normalize_path(f"{folder}/{filename}-{record.item_id}.md")
        return await self._write(path, record.content), path

    async def _reconcile_single_file(self, path: str, record: RenderedRecord) -> SyncEventType:
        content = record.content
        new_value, new_body = extract(content)
        new_front_matter = FrontMatter.from_value(new_value, single_file=True)
        if new_front_matter is None or not new_front_matter.entries:
            raise TemplateError("Front matter does not exist in the template")

        if not await self.vault.file_exists(path):
            await self.vault.create(path, content)
            return SyncEventType.ITEM_CREATED

        existing = await self.vault.read(path)
        existing_value, existing_body = extract(existing)
        front_matter = FrontMatter.from_value(existing_value, single_file=True)
        if front_matter is None:
            front_matter = FrontMatter.sequence([])

        index = front_matter.index_of(record.item_id)
        if index >= 0:
            section = re.compile(
                re.escape(f"%%{record.item_id}_start%%") + ".*?" + re.escape(f"%%{record.item_id}_end%%"),
                re.DOTALL,
            )
            body = section.sub(lambda _: new_body, existing_body, count=1)
            front_matter.entries[index] = new_front_matter.entries[0]
        else:
            # Newest first
            body = f"{new_body}\n\n{existing_body}"
            front_matter.entries.insert(0, new_front_matter.entries[0])

        updated = f"{front_matter.serialize()}\n\n{body}"
        if updated == existing:
            return SyncEventType.ITEM_UNCHANGED
        await self.vault.modify(path, updated)
        return SyncEventType.ITEM_UPDATED
