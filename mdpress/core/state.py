import json
import logging
import os
import tempfile
from pathlib import Path

from mdpress.core.errors import StorageError

logger = logging.getLogger(__name__)


class LocalStorage:
    """
    Key/value store backed by a single JSON file.

    Values are strings, like browser local storage: callers serialize their
    own records. Every write rewrites the whole file through a temp file and
    os.replace, so a crash mid-write never leaves a half-written store.
    """

    def __init__(self, path):
        self.path = Path(path)

    def _read(self):
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Cannot read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"Unexpected store layout in {self.path}")
        return data

    def _write(self, data):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".store-", suffix=".tmp")
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(data, f, indent=2, ensure_ascii=False)
                os.replace(tmp, self.path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise StorageError(f"Cannot write {self.path}: {e}") from e

    def _read_for_update(self):
        try:
            return self._read()
        except StorageError as e:
            # An unreadable file is replaced rather than blocking every later write.
            logger.warning(f"Discarding unreadable store file: {e}")
            return {}

    def get_item(self, key):
        value = self._read().get(key)
        if value is not None and not isinstance(value, str):
            return json.dumps(value)
        return value

    def set_item(self, key, value):
        data = self._read_for_update()
        data[key] = value
        self._write(data)

    def set_items(self, items):
        """Write several keys in one overwrite."""
        data = self._read_for_update()
        data.update(items)
        self._write(data)

    def remove_item(self, key):
        data = self._read_for_update()
        if key in data:
            del data[key]
            self._write(data)

    def keys(self):
        try:
            return list(self._read().keys())
        except StorageError:
            return []
