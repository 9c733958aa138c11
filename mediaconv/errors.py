"""
Error types for admission, conversion and storage.

Admission errors are policy rejections and are reported to the caller as-is.
Conversion errors end a job in the failed state. Storage errors during cleanup
are logged, never propagated into a job outcome.
"""
from __future__ import annotations

from typing import Optional


class ConverterError(Exception):
    """Base exception for everything raised by the conversion core."""

    code = "error"


# ------------ Admission ------------
class AdmissionError(ConverterError):
    http_status = 400

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": str(self)}


class UnsupportedType(AdmissionError):
    code = "unsupported_type"

    def __init__(self, mime_type: str):
        self.mime_type = mime_type
        super().__init__(f"Unsupported file type: {mime_type or 'unknown'}")


class FileTooLarge(AdmissionError):
    code = "file_too_large"
    http_status = 413

    def __init__(self, limit_bytes: int, upgrade_hint: bool):
        self.limit_bytes = limit_bytes
        self.upgrade_hint = upgrade_hint
        limit_mb = limit_bytes // (1024 * 1024)
        msg = f"File exceeds the {limit_mb} MB limit"
        if upgrade_hint:
            msg += "; upgrade to premium for larger uploads"
        super().__init__(msg)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update(limit_bytes=self.limit_bytes, upgrade=self.upgrade_hint)
        return d


class QuotaExceeded(AdmissionError):
    code = "quota_exceeded"
    http_status = 429

    def __init__(self, quota: int):
        self.quota = quota
        super().__init__(f"Conversion quota of {quota} per day reached")

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update(quota=self.quota, upgrade=True)
        return d


# ------------ Conversion ------------
class ConversionError(ConverterError):
    code = "conversion_failed"

    def __init__(self, job_id: str, reason: str):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Conversion failed for job {job_id}: {reason}")


class SpawnFailure(ConversionError):
    code = "spawn_failure"


class EncoderNonZeroExit(ConversionError):
    code = "encoder_exit"

    def __init__(self, job_id: str, returncode: int, stderr_tail: str = ""):
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        super().__init__(job_id, f"encoder exited with status {returncode}")


class EncoderTimeout(ConversionError):
    code = "encoder_timeout"

    def __init__(self, job_id: str, timeout_sec: float):
        self.timeout_sec = timeout_sec
        super().__init__(job_id, f"encoder exceeded {timeout_sec:g}s and was killed")


class EmptyOutput(ConversionError):
    code = "empty_output"

    def __init__(self, job_id: str):
        super().__init__(job_id, "encoder produced no output")


# ------------ Storage / lookup ------------
class StorageIOError(ConverterError):
    code = "storage_io"

    def __init__(self, path, cause: Optional[BaseException] = None):
        self.path = path
        self.cause = cause
        super().__init__(f"Storage operation failed for {path}: {cause}")


class JobNotFound(ConverterError):
    code = "job_not_found"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobNotReady(ConverterError):
    code = "job_not_ready"

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Job {job_id} is {status}, output not available")
