from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path

import yaml
from pydantic import ValidationError

from taskrelay.db.base import (
    ItemExistsError,
    ItemNotFoundError,
    MoveResult,
    StateStore,
    StoreInconsistencyError,
)
from taskrelay.db.document import parse_document, render_document
from taskrelay.models.blocker import BlockerRecord
from taskrelay.models.work_item import Bucket, WorkItem

logger = logging.getLogger(__name__)

_SUFFIX = ".md"
_BLOCKER_DIR = "_blockers"


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp.", suffix=".part", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)


class FileStore(StateStore):
    """Directory-per-bucket store: ``<root>/<bucket>/<id>.md``.

    Documents are replaced atomically (temp file + ``os.replace``) and moved
    with ``os.rename``, which is atomic within one filesystem, so readers and
    external editors never see a half-written or doubly-present item.
    External processes may append to documents in place; the change shows up
    in :meth:`snapshot` as a new modification time.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self._mu = asyncio.Lock()

    async def initialize(self) -> None:
        for bucket in Bucket:
            self._dir(bucket).mkdir(parents=True, exist_ok=True)
        (self.root / _BLOCKER_DIR).mkdir(parents=True, exist_ok=True)
        logger.info("File store initialized at %s", self.root)

    def _dir(self, bucket: Bucket) -> Path:
        return self.root / bucket.value

    def _path(self, bucket: Bucket, item_id: str) -> Path:
        return self._dir(bucket) / f"{item_id}{_SUFFIX}"

    async def list(self, bucket: Bucket) -> list[str]:
        directory = self._dir(bucket)
        if not directory.is_dir():
            return []
        return sorted(p.stem for p in directory.glob(f"*{_SUFFIX}") if not p.name.startswith("."))

    async def read(self, bucket: Bucket, item_id: str) -> WorkItem:
        try:
            text = self._path(bucket, item_id).read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ItemNotFoundError(bucket, item_id) from None
        return parse_document(text, bucket)

    async def write(self, bucket: Bucket, item_id: str, item: WorkItem) -> None:
        text = render_document(item)
        async with self._mu:
            for other in Bucket:
                if other is not bucket and self._path(other, item_id).exists():
                    raise ItemExistsError(item_id, other, bucket)
            _atomic_write_text(self._path(bucket, item_id), text)

    async def move_atomic(
        self, from_bucket: Bucket, to_bucket: Bucket, item_id: str
    ) -> MoveResult:
        source = self._path(from_bucket, item_id)
        target = self._path(to_bucket, item_id)
        async with self._mu:
            if from_bucket is to_bucket:
                return MoveResult.ALREADY_PRESENT if source.exists() else MoveResult.NOT_FOUND
            in_source, in_target = source.exists(), target.exists()
            if in_source and in_target:
                raise StoreInconsistencyError(item_id, [from_bucket, to_bucket])
            if in_source:
                target.parent.mkdir(parents=True, exist_ok=True)
                try:
                    os.rename(source, target)
                except FileNotFoundError:
                    # Removed by another process between the check and the rename.
                    return MoveResult.ALREADY_PRESENT if target.exists() else MoveResult.NOT_FOUND
                return MoveResult.MOVED
            if in_target:
                return MoveResult.ALREADY_PRESENT
            return MoveResult.NOT_FOUND

    async def contains(self, bucket: Bucket, item_id: str) -> bool:
        return self._path(bucket, item_id).exists()

    async def snapshot(self, bucket: Bucket) -> dict[str, float]:
        stamps: dict[str, float] = {}
        directory = self._dir(bucket)
        if not directory.is_dir():
            return stamps
        for path in directory.glob(f"*{_SUFFIX}"):
            if path.name.startswith("."):
                continue
            try:
                stamps[path.stem] = path.stat().st_mtime
            except FileNotFoundError:
                continue
        return stamps

    async def save_blocker(self, record: BlockerRecord) -> None:
        text = yaml.safe_dump(
            record.model_dump(mode="json"), sort_keys=True, allow_unicode=True, width=120
        )
        _atomic_write_text(self.root / _BLOCKER_DIR / f"{record.id}.yaml", text)

    async def load_blockers(self) -> list[BlockerRecord]:
        directory = self.root / _BLOCKER_DIR
        if not directory.is_dir():
            return []
        records: list[BlockerRecord] = []
        for path in sorted(directory.glob("*.yaml")):
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    data = yaml.safe_load(fh) or {}
                records.append(BlockerRecord.model_validate(data))
            except (yaml.YAMLError, ValidationError) as exc:
                logger.warning("Skipping unreadable blocker record %s: %s", path.name, exc)
        return records
