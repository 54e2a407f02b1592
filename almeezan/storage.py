from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional

log = logging.getLogger(__name__)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="wb",
        delete=False,
        dir=str(path.parent),
        prefix=path.name,
        suffix=".tmp",
    ) as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_path = Path(tmp.name)
    os.replace(tmp_path, path)


def atomic_write_text(path: Path, text: str, encoding: str = "utf-8") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding=encoding,
        delete=False,
        dir=str(path.parent),
        prefix=path.name,
        suffix=".tmp",
        newline="\n",
    ) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_path = Path(tmp.name)
    os.replace(tmp_path, path)


def dump_json(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2) + "\n"


def write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, dump_json(data))


def clear_json_files(directory: Path) -> int:
    if not directory.exists():
        return 0
    removed = 0
    for p in sorted(directory.glob("*.json")):
        p.unlink()
        removed += 1
    return removed


class SourceCache:
    """Read-through cache of fetched source bytes under the data directory.

    mode is one of "read-through" (default), "refresh" (always fetch) or
    "offline" (never fetch; a missing file is an error).
    """

    def __init__(self, root: Path, mode: str = "read-through"):
        if mode not in {"read-through", "refresh", "offline"}:
            raise ValueError(f"Unknown cache mode: {mode}")
        self.root = root
        self.mode = mode

    def path_for(self, *parts: str) -> Path:
        return self.root.joinpath(*parts)

    def load(
        self,
        path: Path,
        fetch: Callable[[], bytes],
        *,
        reject: Optional[Callable[[bytes], bool]] = None,
    ) -> bytes:
        """Return cached bytes for `path`, fetching and storing them when needed.

        `reject` flags cached content that must not be served (challenge pages).
        """
        if self.mode != "refresh" and path.exists():
            cached = path.read_bytes()
            if reject is None or not reject(cached):
                log.debug("cache hit %s", path)
                return cached
            if self.mode == "offline":
                raise FileNotFoundError(f"Cached challenge page: {path}")
            log.debug("ignoring cached challenge page %s", path)

        if self.mode == "offline":
            raise FileNotFoundError(f"Missing cached file: {path}")

        data = fetch()
        atomic_write_bytes(path, data)
        return data
