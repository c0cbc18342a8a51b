# picks the active backend and remembers the choice between runs
from __future__ import annotations

import json
import os
from typing import Callable, Optional

from dataservice.config import DATA_SOURCES, LOCAL, REMOTE, Settings
from dataservice.contract import DataService
from dataservice.database import BlobStore
from dataservice.errors import StorageUnavailable, ValidationFailed
from dataservice.local import LocalBackend
from dataservice.remote import RemoteBackend
from utils.logger import get_logger

_logger = get_logger(__name__)

LocalFactory = Callable[[Settings], DataService]
RemoteFactory = Callable[[Settings, BlobStore], DataService]


def _default_local(settings: Settings) -> DataService:
    return LocalBackend.from_settings(settings)


def _default_remote(settings: Settings, blobs: BlobStore) -> DataService:
    return RemoteBackend.from_settings(settings, blobs)


class DataSourceSelector:
    """
    Holds the active backend and swaps it on request.

    The chosen source survives restarts through a small JSON file. Images
    always live in the local blob store, so the remote backend is handed the
    local backend's ``BlobStore``.

    Switching does not migrate data; each backend keeps its own records.
    """

    def __init__(
        self,
        settings: Settings,
        local_factory: Optional[LocalFactory] = None,
        remote_factory: Optional[RemoteFactory] = None,
    ) -> None:
        self.settings = settings
        self._local_factory = local_factory or _default_local
        self._remote_factory = remote_factory or _default_remote
        self._local: Optional[DataService] = None
        self._active: Optional[DataService] = None

    @property
    def service(self) -> DataService:
        if self._active is None:
            raise StorageUnavailable("No data source is open; call open() first")
        return self._active

    @property
    def current(self) -> Optional[str]:
        return self._active.kind if self._active is not None else None

    def _local_backend(self) -> DataService:
        if self._local is None:
            self._local = self._local_factory(self.settings)
        return self._local

    def stored_choice(self) -> str:
        path = self.settings.data_source_state_path
        try:
            with open(path, "r", encoding="utf-8") as fh:
                choice = json.load(fh).get("dataSource")
        except FileNotFoundError:
            return self.settings.default_data_source
        except (OSError, ValueError, AttributeError) as exc:
            _logger.warning(f"Ignoring unreadable data source state {path}: {exc}")
            return self.settings.default_data_source
        return choice if choice in DATA_SOURCES else self.settings.default_data_source

    def _persist(self, kind: str) -> None:
        path = self.settings.data_source_state_path
        directory = os.path.dirname(path)
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(path, "w", encoding="utf-8") as fh:
                json.dump({"dataSource": kind}, fh)
        except OSError as exc:
            _logger.warning(f"Could not persist data source choice to {path}: {exc}")

    async def open(self) -> DataService:
        """Opens the stored (or default) source, falling back to local when remote fails."""
        choice = self.stored_choice()
        if choice == REMOTE:
            try:
                return await self.switch(REMOTE)
            except StorageUnavailable as exc:
                _logger.warning(f"Remote data source unavailable, using local: {exc.message}")
        return await self.switch(LOCAL)

    async def switch(self, kind: str) -> DataService:
        """
        Makes ``kind`` the active source and seeds it if needed.

        A remote source that cannot be reached raises ``StorageUnavailable``
        and leaves the previous source active.
        """
        if kind not in DATA_SOURCES:
            raise ValidationFailed(f"Unknown data source {kind!r}")
        if self._active is not None and self._active.kind == kind:
            return self._active

        local = self._local_backend()
        if kind == LOCAL:
            candidate = local
        else:
            candidate = self._remote_factory(self.settings, local.blobs)
        try:
            await candidate.initialize_data()
        except StorageUnavailable:
            if candidate is not local:
                await candidate.close()
            raise

        previous, self._active = self._active, candidate
        if previous is not None and previous is not local:
            await previous.close()
        self._persist(kind)
        _logger.info(f"Data source set to '{kind}'")
        return candidate

    async def close(self) -> None:
        active, self._active = self._active, None
        if active is not None and active is not self._local:
            await active.close()
        if self._local is not None:
            await self._local.close()
            self._local = None
