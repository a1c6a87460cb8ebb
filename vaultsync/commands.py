"""The user-facing commands: sync, resync and delete the current record.

Each command reports back a list of notices (short user-visible strings).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

from vaultsync.core.frontmatter import parse_front_matter
from vaultsync.core.settings import SyncSettings
from vaultsync.core.storage import SettingsStore
from vaultsync.core.sync_job import (
    RemoteSource,
    SyncEvent,
    SyncEventType,
    SyncReconciler,
)
from vaultsync.core.vault import Vault, VaultError
from vaultsync.providers.omnivore import OmnivoreClient, OmnivoreError

logger = logging.getLogger(__name__)


def omnivore_source(settings: SyncSettings) -> OmnivoreClient:
    return OmnivoreClient(settings.api_key, settings.endpoint)


@dataclass
class CommandContext:
    """Everything a command needs. One settings record per process."""

    settings: SyncSettings
    vault: Vault
    store: SettingsStore | None = None
    source_factory: Callable[[SyncSettings], RemoteSource] = field(default=omnivore_source)

    def save_settings(self) -> None:
        if self.store is not None:
            self.settings.save(self.store)


async def _close(source: RemoteSource) -> None:
    close = getattr(source, "close", None)
    if close is not None:
        await close()


async def stream_sync(context: CommandContext, manual: bool = True) -> AsyncIterator[SyncEvent]:
    """Run one sync and yield its events."""
    source = context.source_factory(context.settings)
    try:
        reconciler = SyncReconciler(context.settings, context.vault, source, store=context.store)
        async for event in reconciler.run(manual=manual):
            yield event
    finally:
        await _close(source)


def event_notice(event: SyncEvent, manual: bool = True) -> str | None:
    """User-visible text for an event, None for events that stay silent."""
    if event.type == SyncEventType.BUSY:
        return "Already syncing ..."
    if event.type == SyncEventType.STARTED and manual:
        return "Fetching articles ..."
    if event.type == SyncEventType.COMPLETED and manual:
        return "Articles fetched"
    if event.type == SyncEventType.WARNING:
        return event.data.get("message")
    if event.type == SyncEventType.ITEM_FAILED:
        return f"Failed to sync {event.data.get('title')}: {event.data.get('error')}"
    if event.type == SyncEventType.FAILED:
        return f"Failed to fetch articles: {event.data.get('error')}"
    return None


async def sync_command(context: CommandContext, manual: bool = True) -> list[str]:
    notices = []
    async for event in stream_sync(context, manual=manual):
        notice = event_notice(event, manual)
        if notice:
            notices.append(notice)
    return notices


async def resync_command(context: CommandContext) -> list[str]:
    """Forget the last sync time and sync everything again."""
    if context.settings.syncing:
        return ["Already syncing ..."]
    context.settings.sync_at = ""
    context.save_settings()
    logger.info("Last sync time reset")
    return await sync_command(context)


async def delete_current_record(context: CommandContext, path: str) -> list[str]:
    """Delete the item a note was rendered from, remotely and locally.

    Without an ``id`` in the note's front matter nothing is deleted. A remote
    failure is reported but the local note is still removed.
    """
    notices: list[str] = []
    try:
        content = await context.vault.read(path)
    except VaultError as e:
        logger.warning(f"Cannot read {path}: {e}")
        return [f"Failed to delete article: {e}"]

    front_matter = parse_front_matter(content)
    item_id = front_matter.get("id") if isinstance(front_matter, dict) else None
    if not item_id:
        return ["Failed to delete article: article id not found"]

    source = context.source_factory(context.settings)
    try:
        if not await source.delete(str(item_id)):
            notices.append("Failed to delete article in Omnivore")
    except OmnivoreError as e:
        logger.warning(f"Remote delete of {item_id} failed: {e}")
        notices.append("Failed to delete article in Omnivore")
    finally:
        await _close(source)

    await context.vault.delete(path)
    notices.append(f"Deleted {path}")
    return notices
