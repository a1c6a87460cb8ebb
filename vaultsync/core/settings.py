from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from typing import TYPE_CHECKING, Any

from vaultsync.core.errors import ConfigurationError
from vaultsync.core.highlights import HighlightManagerId, HighlightOrder
from vaultsync.core.template import DEFAULT_TEMPLATE, FRONT_MATTER_VARIABLES, template_variables

if TYPE_CHECKING:
    from vaultsync.core.storage import SettingsStore

logger = logging.getLogger(__name__)

SYNC_SETTINGS_KEY = "sync_settings"

DEFAULT_ENDPOINT = "https://api-prod.omnivore.app/api/graphql"
FILTERS = ("ALL", "HIGHLIGHTS", "ARCHIVED", "LIBRARY", "ADVANCED")


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    vault_path: str
    log_level: str

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "_local/data/vaultsync.db").strip(),
            vault_path=os.getenv("VAULT_PATH", "_local/vault").strip(),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
        )


def clean_front_matter_variables(variables: list[str]) -> list[str]:
    """Keep recognised ``variable`` / ``variable::alias`` entries, dropping repeats."""
    cleaned: list[str] = []
    for entry in variables:
        entry = entry.strip()
        variable = entry.split("::", 1)[0].strip()
        if variable not in FRONT_MATTER_VARIABLES or entry in cleaned:
            continue
        cleaned.append(entry)
    return cleaned


@dataclass
class SyncSettings:
    """Persisted sync configuration.

    Stored as one JSON document in ``app_settings``. Callers load it once,
    pass it around explicitly and write it back with ``save``.
    """

    api_key: str = ""
    endpoint: str = DEFAULT_ENDPOINT
    filter: str = "HIGHLIGHTS"
    custom_query: str = ""
    sync_at: str = ""
    frequency: int = 0
    template: str = DEFAULT_TEMPLATE
    front_matter_template: str = ""
    front_matter_variables: list[str] = field(
        default_factory=lambda: ["date_saved", "date_published", "tags"]
    )
    highlight_order: str = HighlightOrder.LOCATION.value
    folder: str = "Omnivore/{{{date}}}"
    attachment_folder: str = "Omnivore/attachments"
    filename: str = "{{{title}}}"
    folder_date_format: str = "yyyy-MM-dd"
    filename_date_format: str = "yyyy-MM-dd"
    date_saved_format: str = "yyyy-MM-dd HH:mm:ss"
    date_highlighted_format: str = "yyyy-MM-dd HH:mm:ss"
    is_single_file: bool = False
    syncing: bool = False
    enable_highlight_color_render: bool = False
    highlight_manager_id: str = HighlightManagerId.OMNIVORE.value

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncSettings:
        known = {f.name for f in fields(cls)}
        ignored = sorted(k for k in data if k not in known)
        if ignored:
            logger.debug(f"Ignoring unknown sync settings keys: {ignored}")
        settings = cls(**{k: v for k, v in data.items() if k in known})
        settings.front_matter_variables = clean_front_matter_variables(
            settings.front_matter_variables
        )
        return settings

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def load(cls, store: SettingsStore) -> SyncSettings:
        raw = store.get_setting(SYNC_SETTINGS_KEY)
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Stored sync settings are not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError("Stored sync settings must be a JSON object")
        return cls.from_dict(data)

    def save(self, store: SettingsStore) -> None:
        store.set_setting(SYNC_SETTINGS_KEY, json.dumps(self.to_dict()))

    def validate(self) -> None:
        """Raise ConfigurationError if a sync cannot run with these settings."""
        if not self.api_key:
            raise ConfigurationError("Missing API key")
        if self.filter not in FILTERS:
            raise ConfigurationError(f"Unknown filter: {self.filter}")
        if self.filter == "ADVANCED" and not self.custom_query.strip():
            raise ConfigurationError("The ADVANCED filter needs a custom query")
        try:
            HighlightOrder(self.highlight_order)
        except ValueError as e:
            raise ConfigurationError(f"Unknown highlight order: {self.highlight_order}") from e
        try:
            HighlightManagerId(self.highlight_manager_id)
        except ValueError as e:
            raise ConfigurationError(
                f"Unknown highlight manager: {self.highlight_manager_id}"
            ) from e
        if self.frequency < 0:
            raise ConfigurationError("Frequency must be zero or a positive number of minutes")
        for pattern in (
            self.folder_date_format,
            self.filename_date_format,
            self.date_saved_format,
            self.date_highlighted_format,
        ):
            if not pattern:
                raise ConfigurationError("Date formats must not be empty")
        for template in (
            self.template,
            self.front_matter_template,
            self.folder,
            self.filename,
            self.attachment_folder,
        ):
            template_variables(template)

    def uses_template_variable(self, name: str) -> bool:
        """Whether the item template references ``name`` (e.g. ``content``)."""
        return name in template_variables(self.template)
