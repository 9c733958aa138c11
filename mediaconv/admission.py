# mediaconv/admission.py
from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import Optional, Protocol, Sequence

from .engine import Job, JobEngine
from .errors import FileTooLarge, QuotaExceeded, StorageIOError, UnsupportedType
from .quota import QuotaTracker
from .storage import TransientStorage
from .tiers import TierPolicyResolver

logger = logging.getLogger(__name__)


class UploadStream(Protocol):
    async def read(self, size: int = -1) -> bytes: ...


def _normalize_mime(mime_type: Optional[str]) -> str:
    # "video/mp4; codecs=..." -> "video/mp4"
    return (mime_type or "").split(";", 1)[0].strip().lower()


def _suffix_for(mime_type: str) -> str:
    return mimetypes.guess_extension(mime_type) or ".src"


class AdmissionController:
    """Gatekeeper between the upload transport and the job engine.

    Checks run in a fixed order and the first failure wins: content type,
    size against the caller's tier, then the conversion quota. Whatever was
    already written for a rejected request is deleted before the error is
    raised.
    """

    def __init__(
        self,
        files: TransientStorage,
        resolver: TierPolicyResolver,
        quota: QuotaTracker,
        engine: JobEngine,
        allowed_mime_types: Sequence[str],
        chunk_size: int = 1024 * 1024,
    ) -> None:
        self._files = files
        self._resolver = resolver
        self._quota = quota
        self._engine = engine
        self._allowed = frozenset(_normalize_mime(m) for m in allowed_mime_types)
        self._chunk_size = chunk_size

    async def admit(
        self,
        identity: str,
        declared_mime: Optional[str],
        stream: UploadStream,
        declared_size: Optional[int] = None,
    ) -> Job:
        mime = _normalize_mime(declared_mime)
        if mime not in self._allowed:
            logger.info("rejected upload from %s: unsupported type %r", identity, declared_mime)
            raise UnsupportedType(mime)

        policy = self._resolver.resolve(identity)
        too_large = FileTooLarge(policy.max_upload_bytes, upgrade_hint=not policy.is_premium)
        if declared_size is not None and declared_size > policy.max_upload_bytes:
            logger.info("rejected upload from %s: declared %d bytes", identity, declared_size)
            raise too_large

        path = self._files.new_input_path(_suffix_for(mime))
        try:
            await self._write(stream, path, policy.max_upload_bytes)
        except FileTooLarge:
            self._files.discard(path)
            logger.info("rejected upload from %s: over %d bytes", identity, policy.max_upload_bytes)
            raise too_large from None
        except BaseException:
            self._files.discard(path)
            raise

        decision = self._quota.check_and_reserve(identity, policy.quota_per_window)
        if not decision.allowed:
            self._files.discard(path)
            logger.info("rejected upload from %s: quota exhausted", identity)
            raise QuotaExceeded(policy.quota_per_window)

        reserved = policy.quota_per_window is not None
        try:
            upload = self._files.register(path, mime)
            return self._engine.create_job(identity, upload, quota_reserved=reserved)
        except BaseException:
            if reserved:
                self._quota.release(identity)
            self._files.discard(path)
            raise

    async def _write(self, stream: UploadStream, path: Path, limit: int) -> int:
        written = 0
        try:
            f = path.open("wb")
        except OSError as e:
            raise StorageIOError(path, e) from e
        with f:
            while True:
                chunk = await stream.read(self._chunk_size)
                if not chunk:
                    break
                written += len(chunk)
                if written > limit:
                    raise FileTooLarge(limit, upgrade_hint=False)
                try:
                    f.write(chunk)
                except OSError as e:
                    raise StorageIOError(path, e) from e
        return written
