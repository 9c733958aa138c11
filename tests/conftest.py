import hashlib
import hmac
import io
import time
from types import SimpleNamespace

import pytest

from mediaconv.config import Settings, TierLimits
from mediaconv.context import build_context


ENCODER_OK = """#!/bin/sh
for last; do :; done
printf 'converted' > "$last"
"""

ENCODER_SLOW_OK = """#!/bin/sh
sleep 0.5
for last; do :; done
printf 'converted' > "$last"
"""

ENCODER_FAIL = """#!/bin/sh
echo 'Invalid data found when processing input' >&2
exit 1
"""

ENCODER_HANG = """#!/bin/sh
exec sleep 30
"""


class FakeClock:
    def __init__(self):
        self.now = time.time()

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class BytesStream:
    """Async reader over an in-memory payload, like an UploadFile."""

    def __init__(self, data: bytes):
        self._buf = io.BytesIO(data)

    async def read(self, size: int = -1) -> bytes:
        return self._buf.read(size)


WEBHOOK_SECRET = "whsec_test"


def stripe_signature(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    """stripe-signature header for payload, as Stripe would send it."""
    ts = int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def _write_script(path, body):
    path.write_text(body)
    path.chmod(0o755)
    return str(path)


@pytest.fixture
def encoders(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    return SimpleNamespace(
        ok=_write_script(bin_dir / "ok.sh", ENCODER_OK),
        slow=_write_script(bin_dir / "slow.sh", ENCODER_SLOW_OK),
        fail=_write_script(bin_dir / "fail.sh", ENCODER_FAIL),
        hang=_write_script(bin_dir / "hang.sh", ENCODER_HANG),
        missing=str(bin_dir / "does-not-exist"),
    )


@pytest.fixture
def settings(tmp_path, encoders):
    # Ceilings scaled down to bytes: free 1000, premium 5000.
    return Settings(
        data_dir=tmp_path / "data",
        ffmpeg_path=encoders.ok,
        tiers=TierLimits(
            free_max_upload_bytes=1000,
            premium_max_upload_bytes=5000,
            free_quota_per_window=5,
            window_seconds=3600,
        ),
        max_concurrent_jobs=2,
        encoder_timeout_sec=5,
        spawn_retries=0,
        spawn_retry_delay_sec=0.01,
        retention_sec=3600,
        sweep_interval_sec=3600,
        chunk_size_bytes=256,
        enable_sweeper=False,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ctx(settings, clock):
    return build_context(settings, clock=clock)


@pytest.fixture
def make_stream():
    return BytesStream


def list_files(ctx):
    return sorted(p.name for p in ctx.files.iter_files())


@pytest.fixture
def files_of():
    return list_files


@pytest.fixture
def sign():
    return stripe_signature
