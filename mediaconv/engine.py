# mediaconv/engine.py
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, List, Optional, Set

from .config import EncoderProfile, Settings
from .errors import (
    ConversionError,
    EmptyOutput,
    EncoderNonZeroExit,
    EncoderTimeout,
    JobNotFound,
    JobNotReady,
    SpawnFailure,
)
from .quota import QuotaTracker
from .storage import KeyValueStore, TransientFile, TransientStorage

logger = logging.getLogger(__name__)


class JobStatus:
    ADMITTED = "admitted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    TERMINAL = (SUCCEEDED, FAILED)


@dataclass
class Job:
    job_id: str
    owner: str
    input_path: Path
    size_bytes: int
    mime_type: str
    created_at: float
    quota_reserved: bool = False
    status: str = JobStatus.ADMITTED
    output_path: Optional[Path] = None
    message: str = ""
    error: Optional[ConversionError] = None
    delivered: bool = False
    input_held: bool = field(default=False, repr=False)
    q: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def to_dict(self) -> dict:
        d = {
            "job_id": self.job_id,
            "status": self.status,
            "size_bytes": self.size_bytes,
            "created_at": self.created_at,
            "message": self.message,
        }
        if self.error is not None:
            d["error"] = self.error.code
        return d


def put(job: Job, **payload) -> None:
    job.q.put_nowait(payload)


async def sse_stream(job: Job) -> AsyncIterator[bytes]:
    yield f"data: {json.dumps({'type': 'state', 'job_id': job.job_id, 'status': job.status, 'message': job.message})}\n\n".encode()
    if job.status in JobStatus.TERMINAL:
        return
    last_heartbeat = time.time()
    while True:
        try:
            item = await asyncio.wait_for(job.q.get(), timeout=5.0)
            yield f"data: {json.dumps(item)}\n\n".encode()
            if item.get("status") in JobStatus.TERMINAL:
                return
        except asyncio.TimeoutError:
            if time.time() - last_heartbeat >= 5:
                yield b": keep-alive\n\n"
                last_heartbeat = time.time()


def build_command(
    encoder: str, input_path: Path, output_path: Path, profile: EncoderProfile
) -> List[str]:
    """Argument vector for one conversion. Passed to exec directly, never a shell."""
    return [
        encoder,
        "-hide_banner",
        "-nostdin",
        "-y",
        "-loglevel",
        "error",
        "-i",
        str(input_path),
        *profile.output_args(),
        str(output_path),
    ]


def _preexec_ulimits():
    """Resource limits for the encoder child process."""
    try:
        import resource

        resource.setrlimit(resource.RLIMIT_CPU, (1800, 1800))
        resource.setrlimit(resource.RLIMIT_NOFILE, (512, 512))
    except (ImportError, ValueError, OSError):
        # not available on this platform
        pass


class JobEngine:
    """Owns the live job table and drives the external encoder.

    Jobs wait in ``admitted`` until one of ``max_concurrent_jobs`` slots frees
    up, move to ``running`` once the encoder process exists, and end in
    ``succeeded`` or ``failed``. Only this class changes ``Job.status``.
    """

    def __init__(
        self,
        settings: Settings,
        files: TransientStorage,
        quota: QuotaTracker,
        store: KeyValueStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._files = files
        self._quota = quota
        self._store = store
        self._clock = clock
        self._slots: Optional[asyncio.Semaphore] = None
        self._tasks: Set[asyncio.Task] = set()
        self._procs: Dict[str, asyncio.subprocess.Process] = {}

    # ------------ Job table ------------
    def create_job(self, owner: str, upload: TransientFile, quota_reserved: bool) -> Job:
        job = Job(
            job_id=str(uuid.uuid4()),
            owner=owner,
            input_path=upload.path,
            size_bytes=upload.size_bytes,
            mime_type=upload.mime_type,
            created_at=self._clock(),
            quota_reserved=quota_reserved,
        )
        # the input stays pinned until the job is terminal
        self._files.hold(job.input_path)
        job.input_held = True
        self._store.set(job.job_id, job)
        logger.info("job %s admitted for %s (%d bytes)", job.job_id, owner, job.size_bytes)
        return job

    def get(self, job_id: str) -> Job:
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def jobs(self) -> List[Job]:
        return [job for _, job in self._store.items()]

    def active_jobs(self) -> int:
        return sum(1 for job in self.jobs() if job.status == JobStatus.RUNNING)

    def remove(self, job_id: str) -> None:
        self._store.delete(job_id)

    # ------------ Execution ------------
    def submit(self, job: Job) -> asyncio.Task:
        task = asyncio.create_task(self._run(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(lambda t: self._on_task_done(job, t))
        return task

    def _on_task_done(self, job: Job, task: asyncio.Task) -> None:
        # a task cancelled before its first step never enters _run
        if task.cancelled() and job.status not in JobStatus.TERMINAL:
            self._fail(job, ConversionError(job.job_id, "cancelled"))

    def _semaphore(self) -> asyncio.Semaphore:
        if self._slots is None:
            self._slots = asyncio.Semaphore(max(1, self._settings.max_concurrent_jobs))
        return self._slots

    async def _run(self, job: Job) -> None:
        try:
            async with self._semaphore():
                await self._convert(job)
        except asyncio.CancelledError:
            if job.status not in JobStatus.TERMINAL:
                self._fail(job, ConversionError(job.job_id, "cancelled"))
            raise
        except Exception as e:
            logger.exception("job %s crashed", job.job_id)
            if job.status not in JobStatus.TERMINAL:
                self._fail(job, ConversionError(job.job_id, str(e)))

    async def _convert(self, job: Job) -> None:
        profile = self._settings.profile
        output = self._files.new_output_path(job.job_id, profile.container)
        job.output_path = output
        cmd = build_command(self._settings.ffmpeg_path, job.input_path, output, profile)

        error: Optional[ConversionError] = None
        with self._files.in_use(output):
            try:
                proc = await self._spawn(job, cmd)
                job.status = JobStatus.RUNNING
                job.message = "Converting…"
                put(job, type="state", job_id=job.job_id, status=job.status, message=job.message)
                logger.info("job %s running (pid %s)", job.job_id, proc.pid)
                returncode, stderr_tail = await self._wait(job, proc)
                if returncode != 0:
                    raise EncoderNonZeroExit(job.job_id, returncode, stderr_tail)
                if not output.exists() or output.stat().st_size <= 0:
                    raise EmptyOutput(job.job_id)
            except ConversionError as e:
                error = e

        if error is not None:
            self._fail(job, error)
        else:
            self._succeed(job)

    async def _spawn(self, job: Job, cmd: List[str]) -> asyncio.subprocess.Process:
        attempts = max(0, self._settings.spawn_retries) + 1
        last_error: Optional[OSError] = None
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                    preexec_fn=_preexec_ulimits if os.name == "posix" else None,
                )
            except OSError as e:
                last_error = e
                logger.warning(
                    "job %s: encoder spawn attempt %d/%d failed: %s", job.job_id, attempt, attempts, e
                )
                if attempt < attempts:
                    await asyncio.sleep(self._settings.spawn_retry_delay_sec)
        raise SpawnFailure(job.job_id, str(last_error))

    async def _wait(self, job: Job, proc: asyncio.subprocess.Process):
        self._procs[job.job_id] = proc
        timeout = self._settings.encoder_timeout_sec
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            raise EncoderTimeout(job.job_id, timeout)
        except asyncio.CancelledError:
            await self._kill(proc)
            raise
        finally:
            self._procs.pop(job.job_id, None)
        tail = (stderr or b"").decode("utf-8", "ignore")[-2000:]
        return proc.returncode, tail

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()

    def _succeed(self, job: Job) -> None:
        job.status = JobStatus.SUCCEEDED
        job.message = "Complete"
        self._quota.commit(job.owner, reserved=job.quota_reserved)
        self._release_input(job)
        put(job, type="state", job_id=job.job_id, status=job.status, message=job.message)
        job.done.set()
        logger.info("job %s succeeded", job.job_id)

    def _fail(self, job: Job, error: ConversionError) -> None:
        job.status = JobStatus.FAILED
        job.error = error
        job.message = str(error)
        self._files.discard(job.input_path, job.output_path)
        job.output_path = None
        if job.quota_reserved:
            self._quota.release(job.owner)
        self._release_input(job)
        put(job, type="state", job_id=job.job_id, status=job.status, message=job.message)
        job.done.set()
        logger.warning("job %s failed: %s", job.job_id, error)

    def _release_input(self, job: Job) -> None:
        if job.input_held:
            job.input_held = False
            self._files.unhold(job.input_path)

    # ------------ Results / delivery ------------
    async def await_result(self, job_id: str, timeout: Optional[float] = None) -> Path:
        job = self.get(job_id)
        await asyncio.wait_for(job.done.wait(), timeout=timeout)
        if job.status == JobStatus.FAILED:
            raise job.error
        return job.output_path

    def open_output(self, job_id: str) -> Path:
        job = self.get(job_id)
        if job.status != JobStatus.SUCCEEDED or job.output_path is None:
            raise JobNotReady(job_id, job.status)
        if not job.output_path.exists():
            raise JobNotReady(job_id, "expired")
        return job.output_path

    def finish_delivery(self, job_id: str) -> None:
        """Drop both transient files and the job once the output was sent."""
        job = self._store.get(job_id)
        if job is None:
            return
        job.delivered = True
        self._release_input(job)
        self._files.discard(job.input_path, job.output_path)
        self._store.delete(job_id)
        logger.info("job %s delivered and cleaned up", job_id)

    async def shutdown(self) -> None:
        for proc in list(self._procs.values()):
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
