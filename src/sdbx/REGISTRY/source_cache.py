# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Local cache of git source checkouts.
Tracks when each checkout was last refreshed and which commit it holds.
"""

import json
import logging
import shutil
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional

from ..UTILS.atomic_write import atomic_write_text

logger = logging.getLogger(__name__)

INDEX_FILE = "cache.json"


@dataclass
class CachedSource:
    """Index entry for one cached checkout."""
    name: str
    url: str = ""
    branch: str = ""
    commit: str = ""
    last_updated: str = ""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _format(ts: datetime) -> str:
    return ts.isoformat().replace("+00:00", "Z")


def _parse(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SourceCache:
    """
    Manages the directory holding git checkouts, one per source name.
    """

    def __init__(self, cache_dir: str, ttl: timedelta = timedelta(hours=24)):
        """
        Initialize the source cache.

        Args:
            cache_dir: Directory for checkouts and the cache index.
            ttl: How long a checkout stays fresh after a refresh.
        """
        self.cache_dir = Path(cache_dir)
        self.ttl = ttl
        self.index_file = self.cache_dir / INDEX_FILE
        self._lock = threading.RLock()

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._index = self._load_index()

    def _load_index(self) -> Dict[str, CachedSource]:
        """Load the cache index from disk."""
        if not self.index_file.exists():
            return {}
        try:
            with open(self.index_file, 'r') as f:
                raw = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable source cache index %s: %s", self.index_file, e)
            return {}
        index = {}
        for name, entry in raw.items():
            if isinstance(entry, dict):
                entry = {k: v for k, v in entry.items() if k in CachedSource.__dataclass_fields__}
                entry["name"] = name
                index[name] = CachedSource(**entry)
        return index

    def _save_index(self) -> None:
        """Save the cache index to disk."""
        data = {name: asdict(entry) for name, entry in sorted(self._index.items())}
        atomic_write_text(str(self.index_file), json.dumps(data, indent=2))

    def _entry(self, name: str) -> CachedSource:
        entry = self._index.get(name)
        if entry is None:
            entry = CachedSource(name=name)
            self._index[name] = entry
        return entry

    def repo_path(self, name: str) -> Path:
        """Where the checkout for a source lives."""
        return self.cache_dir / name

    def exists(self, name: str) -> bool:
        return self.repo_path(name).is_dir()

    def needs_update(self, name: str) -> bool:
        """
        True when the source was never refreshed or its TTL has expired.
        """
        with self._lock:
            entry = self._index.get(name)
            last = _parse(entry.last_updated) if entry else None
        if last is None:
            return True
        return _now() - last > self.ttl

    def mark_updated(self, name: str, url: str = "", branch: str = "") -> None:
        with self._lock:
            entry = self._entry(name)
            entry.last_updated = _format(_now())
            if url:
                entry.url = url
            if branch:
                entry.branch = branch
            self._save_index()

    def set_commit(self, name: str, commit: str) -> None:
        with self._lock:
            self._entry(name).commit = commit
            self._save_index()

    def get_commit(self, name: str) -> str:
        with self._lock:
            entry = self._index.get(name)
            return entry.commit if entry else ""

    def get_last_updated(self, name: str) -> str:
        with self._lock:
            entry = self._index.get(name)
            return entry.last_updated if entry else ""

    def clear(self, name: str) -> None:
        """Forget a source and delete its checkout."""
        with self._lock:
            self._index.pop(name, None)
            self._save_index()
            shutil.rmtree(self.repo_path(name), ignore_errors=True)

