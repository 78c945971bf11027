"""Runtime miner configuration persisted to ``config.json``.

Holds the values that change while the service runs (auth token, viewer id,
streamer list). Environment settings only seed the file on first creation.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.json"


class MinerConfig(BaseModel):
    auth_token: str | None = None
    user_id: str | None = None
    streamers: list[str] = Field(default_factory=list)

    @field_validator("streamers")
    @classmethod
    def normalize_streamers(cls, v: list[str]) -> list[str]:
        names: list[str] = []
        for raw in v:
            name = raw.strip().lower()
            if name and name not in names:
                names.append(name)
        return names


class MinerConfigStore:
    def __init__(self, path: Path, defaults: MinerConfig | None = None):
        self.path = path
        self.defaults = defaults or MinerConfig()
        self.config = self._load()

    @classmethod
    def from_settings(cls, settings) -> MinerConfigStore:
        defaults = MinerConfig(
            auth_token=settings.twitch_auth_token or None,
            streamers=settings.streamer_list,
        )
        return cls(Path(settings.data_dir) / CONFIG_FILENAME, defaults)

    def _load(self) -> MinerConfig:
        if not self.path.exists():
            config = self.defaults.model_copy(deep=True)
            self._save(config)
            return config

        try:
            return MinerConfig.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as e:
            logger.error(f"Could not read {self.path}, using defaults: {e}")
            return self.defaults.model_copy(deep=True)

    def _save(self, config: MinerConfig | None = None) -> None:
        config = config or self.config
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(config.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            logger.error(f"Could not write {self.path}: {e}")

    def reload(self) -> None:
        self.config = self._load()

    # ==================== Auth ====================

    def get_auth_token(self) -> str | None:
        return self.config.auth_token

    def set_auth_token(self, token: str | None) -> None:
        self.config.auth_token = token or None
        self._save()

    def get_user_id(self) -> str | None:
        return self.config.user_id

    def set_user_id(self, user_id: str | None) -> None:
        self.config.user_id = user_id or None
        self._save()

    # ==================== Streamers ====================

    def get_streamers(self) -> list[str]:
        return list(self.config.streamers)

    def add_streamer(self, name: str) -> bool:
        """Append a streamer. Returns False if it was already configured."""
        normalized = name.strip().lower()
        if not normalized or normalized in self.config.streamers:
            return False
        self.config.streamers.append(normalized)
        self._save()
        return True

    def remove_streamer(self, name: str) -> bool:
        normalized = name.strip().lower()
        if normalized not in self.config.streamers:
            return False
        self.config.streamers.remove(normalized)
        self._save()
        return True
