"""Local persistence for connection records: one TOML table per platform."""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import tomlkit

logger = logging.getLogger(__name__)


class ConnectionStore:
    """Reads and writes raw connection records keyed by platform.

    Every write replaces the whole file atomically, so a crash mid-write never
    leaves a half-written record behind. Records are plain dicts; validation is
    the owning provider's job.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _load(self) -> tomlkit.TOMLDocument:
        if not self.path.exists():
            return tomlkit.document()
        with self.path.open() as fh:
            return tomlkit.load(fh)

    def _dump(self, doc: tomlkit.TOMLDocument) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as fh:
                fh.write(tomlkit.dumps(doc))
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def read(self, platform: str) -> Any:
        """Return the stored record for platform, or None if there is none.

        A hand-edited file can hold something other than a table here; callers
        check the shape.

        Raises tomlkit's ParseError / OSError when the file itself is unreadable.
        """
        doc = self._load()
        record = doc.get(platform)
        if record is None:
            return None
        return record.unwrap() if hasattr(record, "unwrap") else dict(record)

    def write(self, platform: str, record: dict) -> None:
        doc = self._load()
        doc[platform] = record
        self._dump(doc)
        logger.debug("Saved %s connection to %s", platform, self.path)
