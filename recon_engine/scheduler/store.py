"""
Persistence for scheduled import configurations.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import ValidationError

from ..engine.errors import ScheduleNotFoundError, ScheduleStoreError
from ..models import ScheduledImportConfig

logger = logging.getLogger(__name__)


class ScheduleStore:
    """
    JSON file of scheduled import configurations keyed by ID.

    Source credentials are written in clear so scheduled runs can
    authenticate; the file should be readable by the service account only.
    """

    def __init__(self, storage_path: Optional[Union[str, Path]] = None):
        self.storage_path = Path(storage_path) if storage_path else None
        self._lock = threading.RLock()
        self._configs: Dict[str, ScheduledImportConfig] = {}
        if self.storage_path and self.storage_path.exists():
            self._load()

    def _load(self):
        try:
            with open(self.storage_path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load schedules from {self.storage_path}: {e}")
            return

        for item in data.get("schedules", []):
            try:
                config = ScheduledImportConfig.model_validate(item)
            except ValidationError as e:
                logger.warning(f"Skipping invalid schedule {item.get('id')}: {e}")
                continue
            self._configs[config.id] = config
        logger.info(f"Loaded {len(self._configs)} schedules from {self.storage_path}")

    def _save(self):
        if not self.storage_path:
            return
        payload = {
            "schedules": [
                c.model_dump(mode="json", context={"reveal_secrets": True})
                for c in self._configs.values()
            ]
        }
        tmp_path = self.storage_path.with_suffix(".tmp")
        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, self.storage_path)
        except OSError as e:
            logger.error(f"Failed to save schedules to {self.storage_path}: {e}")
            raise ScheduleStoreError(f"Could not save schedules: {e}") from e

    def list(self) -> List[ScheduledImportConfig]:
        with self._lock:
            return sorted(
                (c.model_copy(deep=True) for c in self._configs.values()),
                key=lambda c: c.created_at,
            )

    def get(self, config_id: str) -> ScheduledImportConfig:
        with self._lock:
            config = self._configs.get(config_id)
            if config is None:
                raise ScheduleNotFoundError(f"Schedule {config_id} not found")
            return config.model_copy(deep=True)

    def save(self, config: ScheduledImportConfig) -> ScheduledImportConfig:
        with self._lock:
            previous = self._configs.get(config.id)
            self._configs[config.id] = config.model_copy(deep=True)
            try:
                self._save()
            except ScheduleStoreError:
                if previous is None:
                    del self._configs[config.id]
                else:
                    self._configs[config.id] = previous
                raise
        return config

    def delete(self, config_id: str):
        with self._lock:
            if config_id not in self._configs:
                raise ScheduleNotFoundError(f"Schedule {config_id} not found")
            removed = self._configs.pop(config_id)
            try:
                self._save()
            except ScheduleStoreError:
                self._configs[config_id] = removed
                raise
        logger.info(f"Deleted schedule {config_id}")
