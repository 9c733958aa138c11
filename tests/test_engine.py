import asyncio
from pathlib import Path

import pytest

from mediaconv.config import EncoderProfile
from mediaconv.engine import JobStatus, build_command
from mediaconv.errors import (
    EncoderNonZeroExit,
    EncoderTimeout,
    JobNotReady,
    SpawnFailure,
)

IP = "198.51.100.4"


async def _admit(ctx, make_stream, data=b"payload"):
    return await ctx.admission.admit(IP, "video/mp4", make_stream(data))


def _drain(job):
    events = []
    while not job.q.empty():
        events.append(job.q.get_nowait())
    return events


def test_build_command_keeps_paths_as_single_arguments():
    hostile = Path("/tmp/in; rm -rf ~ $(reboot).mp4")
    out = Path("/tmp/out.mp4")
    argv = build_command("/usr/bin/ffmpeg", hostile, out, EncoderProfile())

    assert argv[0] == "/usr/bin/ffmpeg"
    assert argv.count(str(hostile)) == 1
    assert argv[argv.index("-i") + 1] == str(hostile)
    assert argv[-1] == str(out)
    assert "-c:v" in argv and "libx264" in argv
    assert all(isinstance(a, str) for a in argv)


@pytest.mark.asyncio
async def test_successful_job_commits_quota_once(ctx, make_stream):
    job = await _admit(ctx, make_stream)
    ctx.engine.submit(job)
    path = await ctx.engine.await_result(job.job_id, timeout=5)

    assert path.read_bytes() == b"converted"
    assert job.status == JobStatus.SUCCEEDED
    rec = ctx.quota.record(IP)
    assert rec.conversion_count == 1
    assert rec.lifetime_count == 1
    assert rec.reserved == 0

    statuses = [e["status"] for e in _drain(job)]
    assert statuses == [JobStatus.RUNNING, JobStatus.SUCCEEDED]
    assert ctx.engine.open_output(job.job_id) == path


@pytest.mark.asyncio
async def test_nonzero_exit_fails_job_and_frees_quota(ctx, settings, encoders, make_stream, files_of):
    settings.ffmpeg_path = encoders.fail
    job = await _admit(ctx, make_stream)
    ctx.engine.submit(job)

    with pytest.raises(EncoderNonZeroExit) as exc:
        await ctx.engine.await_result(job.job_id, timeout=5)

    assert exc.value.returncode == 1
    assert "Invalid data" in exc.value.stderr_tail
    assert job.status == JobStatus.FAILED
    assert job.output_path is None
    assert files_of(ctx) == []
    rec = ctx.quota.record(IP)
    assert rec.conversion_count == 0
    assert rec.reserved == 0
    with pytest.raises(JobNotReady):
        ctx.engine.open_output(job.job_id)


@pytest.mark.asyncio
async def test_nonzero_exit_is_not_retried(ctx, settings, encoders, make_stream, monkeypatch):
    settings.ffmpeg_path = encoders.fail
    settings.spawn_retries = 3
    calls = []
    real_exec = asyncio.create_subprocess_exec

    async def counting_exec(*args, **kwargs):
        calls.append(args[0])
        return await real_exec(*args, **kwargs)

    monkeypatch.setattr(asyncio, "create_subprocess_exec", counting_exec)
    job = await _admit(ctx, make_stream)
    ctx.engine.submit(job)
    with pytest.raises(EncoderNonZeroExit):
        await ctx.engine.await_result(job.job_id, timeout=5)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_runaway_encoder_is_killed(ctx, settings, encoders, make_stream, files_of):
    settings.ffmpeg_path = encoders.hang
    settings.encoder_timeout_sec = 0.3
    job = await _admit(ctx, make_stream)
    ctx.engine.submit(job)

    with pytest.raises(EncoderTimeout):
        await ctx.engine.await_result(job.job_id, timeout=5)
    assert job.status == JobStatus.FAILED
    assert files_of(ctx) == []
    assert ctx.engine.active_jobs() == 0


@pytest.mark.asyncio
async def test_missing_encoder_is_spawn_failure(ctx, settings, encoders, make_stream, files_of):
    settings.ffmpeg_path = encoders.missing
    settings.spawn_retries = 2
    job = await _admit(ctx, make_stream)
    ctx.engine.submit(job)

    with pytest.raises(SpawnFailure):
        await ctx.engine.await_result(job.job_id, timeout=5)
    # never reached running
    assert [e["status"] for e in _drain(job)] == [JobStatus.FAILED]
    assert files_of(ctx) == []
    assert ctx.quota.remaining(IP, 5) == 5


@pytest.mark.asyncio
async def test_transient_spawn_failure_is_retried(ctx, settings, make_stream, monkeypatch):
    settings.spawn_retries = 1
    calls = []
    real_exec = asyncio.create_subprocess_exec

    async def flaky_exec(*args, **kwargs):
        calls.append(args[0])
        if len(calls) == 1:
            raise OSError(24, "Too many open files")
        return await real_exec(*args, **kwargs)

    monkeypatch.setattr(asyncio, "create_subprocess_exec", flaky_exec)
    job = await _admit(ctx, make_stream)
    ctx.engine.submit(job)
    path = await ctx.engine.await_result(job.job_id, timeout=5)
    assert path.read_bytes() == b"converted"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_running_jobs_are_capped(ctx, settings, encoders, make_stream):
    settings.ffmpeg_path = encoders.slow
    settings.max_concurrent_jobs = 1
    first = await _admit(ctx, make_stream)
    second = await _admit(ctx, make_stream)
    ctx.engine.submit(first)
    ctx.engine.submit(second)

    for _ in range(100):
        if ctx.engine.active_jobs() == 1:
            break
        await asyncio.sleep(0.02)
    assert sorted(j.status for j in (first, second)) == [JobStatus.ADMITTED, JobStatus.RUNNING]
    assert ctx.stats()["active_jobs"] == 1

    await ctx.engine.await_result(first.job_id, timeout=5)
    await ctx.engine.await_result(second.job_id, timeout=5)
    assert ctx.engine.active_jobs() == 0
    assert ctx.quota.record(IP).conversion_count == 2


@pytest.mark.asyncio
async def test_output_not_ready_while_running(ctx, settings, encoders, make_stream):
    settings.ffmpeg_path = encoders.slow
    job = await _admit(ctx, make_stream)
    ctx.engine.submit(job)
    with pytest.raises(JobNotReady):
        ctx.engine.open_output(job.job_id)
    await ctx.engine.await_result(job.job_id, timeout=5)


@pytest.mark.asyncio
async def test_shutdown_kills_running_encoders(ctx, settings, encoders, make_stream, files_of):
    settings.ffmpeg_path = encoders.hang
    job = await _admit(ctx, make_stream)
    ctx.engine.submit(job)
    for _ in range(100):
        if job.status == JobStatus.RUNNING:
            break
        await asyncio.sleep(0.02)

    await ctx.engine.shutdown()
    assert job.status == JobStatus.FAILED
    assert files_of(ctx) == []


@pytest.mark.asyncio
async def test_cancel_before_start_releases_reservation(ctx, make_stream, files_of):
    job = await _admit(ctx, make_stream)
    assert ctx.quota.remaining(IP, 5) == 4

    task = ctx.engine.submit(job)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert job.status == JobStatus.FAILED
    assert job.error.reason == "cancelled"
    assert ctx.quota.remaining(IP, 5) == 5
    assert not ctx.files.is_in_use(job.input_path)
    assert files_of(ctx) == []
