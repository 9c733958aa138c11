# mediaconv/storage.py
from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple

from .errors import StorageIOError

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Keyed table used for usage records, premium status and live jobs."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> List[str]: ...

    def items(self) -> List[Tuple[str, Any]]: ...

    def __len__(self) -> int: ...


class InMemoryStore:
    """Process-local store. Contents are lost when the process exits."""

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data)

    def items(self) -> List[Tuple[str, Any]]:
        with self._lock:
            return list(self._data.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


@dataclass
class TransientFile:
    path: Path
    size_bytes: int
    mime_type: str
    created_at: float


class TransientStorage:
    """Upload and output directories plus in-use markers for their files."""

    def __init__(self, upload_dir: Path, output_dir: Path) -> None:
        self.upload_dir = Path(upload_dir)
        self.output_dir = Path(output_dir)
        for p in (self.upload_dir, self.output_dir):
            p.mkdir(parents=True, exist_ok=True)
        self._in_use: Counter = Counter()
        self._lock = threading.Lock()

    def new_input_path(self, suffix: str = ".src") -> Path:
        return self.upload_dir / f"{uuid.uuid4().hex}{suffix}"

    def new_output_path(self, job_id: str, container: str) -> Path:
        return self.output_dir / f"{job_id}.{container}"

    def register(self, path: Path, mime_type: str) -> TransientFile:
        st = path.stat()
        return TransientFile(
            path=path, size_bytes=st.st_size, mime_type=mime_type, created_at=time.time()
        )

    def delete(self, path: Optional[Path]) -> bool:
        """Remove a file. Returns False when it was already gone."""
        if path is None:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageIOError(path, e) from e
        return True

    def discard(self, *paths: Optional[Path]) -> None:
        """Best-effort delete; failures are logged and swallowed."""
        for p in paths:
            try:
                self.delete(p)
            except StorageIOError as e:
                logger.warning("cleanup failed: %s", e)

    def hold(self, *paths: Optional[Path]) -> None:
        keys = [str(p) for p in paths if p is not None]
        with self._lock:
            self._in_use.update(keys)

    def unhold(self, *paths: Optional[Path]) -> None:
        keys = [str(p) for p in paths if p is not None]
        with self._lock:
            self._in_use.subtract(keys)
            for k in keys:
                if self._in_use[k] <= 0:
                    del self._in_use[k]

    @contextmanager
    def in_use(self, *paths: Optional[Path]) -> Iterator[None]:
        self.hold(*paths)
        try:
            yield
        finally:
            self.unhold(*paths)

    def is_in_use(self, path: Path) -> bool:
        with self._lock:
            return self._in_use[str(path)] > 0

    def iter_files(self) -> Iterator[Path]:
        for d in (self.upload_dir, self.output_dir):
            if not d.exists():
                continue
            for p in d.iterdir():
                if p.is_file():
                    yield p
