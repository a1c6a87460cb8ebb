"""Note vault storage.

All paths are vault-relative with "/" separators. ``LocalVault`` maps them
onto a directory on disk and refuses paths that resolve outside of it.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable

from vaultsync.core.errors import VaultSyncError
from vaultsync.core.frontmatter import FRONT_MATTER_RE, parse_front_matter, serialize
from vaultsync.core.paths import normalize_path

logger = logging.getLogger(__name__)


class VaultError(VaultSyncError):
    """A vault read or write failed."""


class VaultFileExistsError(VaultError, FileExistsError):
    """``create`` was asked to write a path that already exists."""

    def __init__(self, path: str) -> None:
        super().__init__(f"File already exists: {path}")
        self.path = path


class Vault(ABC):
    """Storage collaborator the sync engine writes notes through."""

    def normalize_path(self, path: str) -> str:
        return normalize_path(path)

    @abstractmethod
    async def folder_exists(self, path: str) -> bool: ...

    @abstractmethod
    async def create_folder(self, path: str) -> None: ...

    @abstractmethod
    async def file_exists(self, path: str) -> bool: ...

    @abstractmethod
    async def read(self, path: str) -> str: ...

    @abstractmethod
    async def create(self, path: str, content: str) -> None:
        """Write a new file. Raises VaultFileExistsError if it exists."""

    @abstractmethod
    async def modify(self, path: str, content: str) -> None: ...

    @abstractmethod
    async def create_binary(self, path: str, data: bytes) -> None: ...

    @abstractmethod
    async def delete(self, path: str) -> None: ...

    async def process_front_matter(
        self,
        path: str,
        fn: Callable[[dict[str, Any]], None],
    ) -> dict[str, Any]:
        """Parse the file's front matter, let ``fn`` mutate it, write it back.

        A file without a mapping front matter is handed an empty mapping.
        Returns the mapping after ``fn`` ran.
        """
        content = await self.read(path)
        value = parse_front_matter(content)
        front_matter = value if isinstance(value, dict) else {}
        fn(front_matter)
        body = FRONT_MATTER_RE.sub("", content, count=1)
        await self.modify(path, f"{serialize(front_matter)}\n{body}")
        return front_matter


class LocalVault(Vault):
    """Vault backed by a directory on the local filesystem."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        normalized = self.normalize_path(path)
        full = (self.root / normalized).resolve()
        if full != self.root and self.root not in full.parents:
            raise VaultError(f"Path escapes the vault: {path}")
        return full

    async def folder_exists(self, path: str) -> bool:
        return self._resolve(path).is_dir()

    async def create_folder(self, path: str) -> None:
        try:
            await asyncio.to_thread(self._resolve(path).mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise VaultError(f"Could not create folder {path}: {e}") from e

    async def file_exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    async def read(self, path: str) -> str:
        try:
            return await asyncio.to_thread(self._resolve(path).read_text, encoding="utf-8")
        except OSError as e:
            raise VaultError(f"Could not read {path}: {e}") from e

    async def create(self, path: str, content: str) -> None:
        full = self._resolve(path)

        def _write_new() -> None:
            full.parent.mkdir(parents=True, exist_ok=True)
            # "x" fails if another writer got there first
            with open(full, "x", encoding="utf-8", newline="") as f:
                f.write(content)

        try:
            await asyncio.to_thread(_write_new)
        except FileExistsError as e:
            raise VaultFileExistsError(path) from e
        except OSError as e:
            raise VaultError(f"Could not create {path}: {e}") from e
        logger.debug(f"Created {path}")

    async def modify(self, path: str, content: str) -> None:
        full = self._resolve(path)

        def _write() -> None:
            with open(full, "w", encoding="utf-8", newline="") as f:
                f.write(content)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise VaultError(f"Could not modify {path}: {e}") from e
        logger.debug(f"Modified {path}")

    async def create_binary(self, path: str, data: bytes) -> None:
        full = self._resolve(path)

        def _write_new() -> None:
            full.parent.mkdir(parents=True, exist_ok=True)
            with open(full, "xb") as f:
                f.write(data)

        try:
            await asyncio.to_thread(_write_new)
        except FileExistsError as e:
            raise VaultFileExistsError(path) from e
        except OSError as e:
            raise VaultError(f"Could not create {path}: {e}") from e

    async def delete(self, path: str) -> None:
        try:
            await asyncio.to_thread(self._resolve(path).unlink)
        except OSError as e:
            raise VaultError(f"Could not delete {path}: {e}") from e
        logger.debug(f"Deleted {path}")
