import os
import sys

import pytest
from rich.console import Console

from nvupgrader.errors import DownloadFailed, PreconditionFailure
from nvupgrader.models import Version
from nvupgrader.services.artifact_cache import ArtifactCache
from nvupgrader.services.filesystem import FileSystemService

VERSION = Version.parse("550.127.05")
FILENAME = "NVIDIA-Linux-x86_64-550.127.05.run"


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class FakeResponse:
    def __init__(self, payload: bytes):
        self.payload = payload
        self.headers = {"Content-Length": str(len(payload))}

    def raise_for_status(self):
        return None

    def iter_content(self, chunk_size=8192):
        yield self.payload

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class FakeRequestsModule:
    class RequestException(Exception):
        pass

    def __init__(self, payload: bytes = b"", error: bool = False):
        self.payload = payload
        self.error = error
        self.urls = []

    def get(self, url, *_args, **_kwargs):
        self.urls.append(url)
        if self.error:
            raise self.RequestException("connection reset")
        return FakeResponse(self.payload)


def _cache(tmp_path, requests_module, **kwargs):
    console = Console(record=True)
    return ArtifactCache(
        logger=DummyLogger(),
        console=console,
        requests_module=requests_module,
        filesystem_service=FileSystemService(logger=DummyLogger(), console=console),
        cache_dir=str(tmp_path / "cache"),
        base_url="https://download.example.com/Linux-x86_64/",
        min_size_bytes=16,
        **kwargs,
    )


def test_url_and_path_use_versioned_template(tmp_path):
    cache = _cache(tmp_path, FakeRequestsModule())

    assert cache.url_for(VERSION) == f"https://download.example.com/Linux-x86_64/550.127.05/{FILENAME}"
    assert cache.path_for(VERSION) == str(tmp_path / "cache" / FILENAME)


def test_dry_run_returns_placeholder_without_side_effects(tmp_path):
    requests_module = FakeRequestsModule(payload=b"x" * 64)
    cache = _cache(tmp_path, requests_module)

    artifact = cache.ensure(VERSION, dry_run=True)

    assert artifact.validated is False
    assert artifact.size_bytes == 0
    assert requests_module.urls == []
    assert not (tmp_path / "cache").exists()


def test_valid_cached_file_is_reused(tmp_path):
    requests_module = FakeRequestsModule(payload=b"unused")
    cache = _cache(tmp_path, requests_module)
    cached = tmp_path / "cache" / FILENAME
    cached.parent.mkdir(parents=True)
    cached.write_bytes(b"x" * 32)

    artifact = cache.ensure(VERSION)

    assert artifact.validated is True
    assert artifact.size_bytes == 32
    assert requests_module.urls == []
    if sys.platform != "win32":
        assert os.stat(cached).st_mode & 0o111


def test_small_cached_file_is_downloaded_again_exactly_once(tmp_path):
    requests_module = FakeRequestsModule(payload=b"y" * 64)
    cache = _cache(tmp_path, requests_module)
    cached = tmp_path / "cache" / FILENAME
    cached.parent.mkdir(parents=True)
    cached.write_bytes(b"bad")

    artifact = cache.ensure(VERSION)

    assert len(requests_module.urls) == 1
    assert artifact.validated is True
    assert cached.read_bytes() == b"y" * 64


def test_small_download_fails_without_looping(tmp_path):
    requests_module = FakeRequestsModule(payload=b"tiny")
    cache = _cache(tmp_path, requests_module)
    cached = tmp_path / "cache" / FILENAME
    cached.parent.mkdir(parents=True)
    cached.write_bytes(b"bad")

    with pytest.raises(DownloadFailed, match="looks corrupted"):
        cache.ensure(VERSION)

    assert len(requests_module.urls) == 1
    assert not cached.exists()


def test_missing_file_without_auto_download_is_a_precondition_failure(tmp_path):
    requests_module = FakeRequestsModule(payload=b"y" * 64)
    cache = _cache(tmp_path, requests_module, auto_download=False)

    with pytest.raises(PreconditionFailure, match="Driver installer not found"):
        cache.ensure(VERSION)

    assert requests_module.urls == []


def test_request_errors_raise_download_failed_and_leave_no_partial_file(tmp_path):
    cache = _cache(tmp_path, FakeRequestsModule(error=True))

    with pytest.raises(DownloadFailed, match="connection reset"):
        cache.ensure(VERSION)

    assert not (tmp_path / "cache" / f"{FILENAME}.part").exists()
    assert not (tmp_path / "cache" / FILENAME).exists()
