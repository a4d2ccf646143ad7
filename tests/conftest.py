"""
Shared fixtures. Storage roots are pointed at a scratch directory before
main is imported so the module-level setup never touches the working tree.
"""

import json
import os
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

_SCRATCH = Path(tempfile.mkdtemp(prefix="yt-dlp-relay-tests-"))
os.environ.setdefault("DOWNLOAD_ROOT", str(_SCRATCH / "downloads"))
os.environ.setdefault("UPLOAD_ROOT", str(_SCRATCH / "uploads"))

import main  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def output_dir_from_args(args: list[str]) -> Path:
    return Path(args[args.index("-o") + 1]).parent


class FakeYtDlp:
    """
    Stand-in for main.run_ytdlp.

    Metadata calls (--dump-single-json) answer from `metadata`, keyed by the
    probed URL; download calls write `files` into the -o directory and then
    raise `download_error` if one is set.
    """

    def __init__(
        self,
        metadata: dict[str, Any] | None = None,
        files: list[str] | None = None,
        download_error: Exception | None = None,
    ):
        self.metadata = metadata or {}
        self.files = files or []
        self.download_error = download_error
        self.calls: list[list[str]] = []

    @property
    def download_calls(self) -> list[list[str]]:
        return [c for c in self.calls if "--dump-single-json" not in c]

    @property
    def probed_urls(self) -> list[str]:
        return [c[-1] for c in self.calls if "--dump-single-json" in c]

    async def __call__(self, args, *, capture_stdout: bool = False) -> main.ProcessResult:
        args = list(args)
        self.calls.append(args)
        if "--dump-single-json" in args:
            payload = self.metadata[args[-1]]
            if isinstance(payload, Exception):
                raise payload
            stdout = payload if isinstance(payload, str) else json.dumps(payload)
            return main.ProcessResult(stdout=stdout)

        out_dir = output_dir_from_args(args)
        for name in self.files:
            (out_dir / name).write_bytes(b"media:" + name.encode())
        if self.download_error is not None:
            raise self.download_error
        return main.ProcessResult()


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings(temp_dir: Path) -> main.Settings:
    cfg = main.Settings(
        download_root=temp_dir / "downloads",
        upload_root=temp_dir / "uploads",
        job_ttl_seconds=60,
        cleanup_interval_seconds=300,
        expiry_check_seconds=5,
        ytdlp_command=["yt-dlp"],
    )
    cfg.download_root.mkdir(parents=True)
    cfg.upload_root.mkdir(parents=True)
    return cfg


@pytest.fixture
def test_registry(clock: FakeClock) -> main.JobRegistry:
    return main.JobRegistry(ttl_seconds=60, clock=clock)


@pytest.fixture
def test_dispatcher(
    test_registry: main.JobRegistry, test_settings: main.Settings
) -> main.DownloadDispatcher:
    cookies = main.CookieConfig()
    return main.DownloadDispatcher(
        test_registry, main.SourceResolver(cookies), test_settings, cookies
    )


@pytest.fixture
def reset_state(
    monkeypatch: pytest.MonkeyPatch,
    test_registry: main.JobRegistry,
    test_dispatcher: main.DownloadDispatcher,
) -> main.JobRegistry:
    """Swap the module-level registry/dispatcher for isolated ones."""
    monkeypatch.setattr(main, "registry", test_registry)
    monkeypatch.setattr(main, "dispatcher", test_dispatcher)
    monkeypatch.setattr(main, "cookie_config", main.CookieConfig())
    return test_registry


@pytest.fixture
def fake_ytdlp(monkeypatch: pytest.MonkeyPatch) -> Callable[..., FakeYtDlp]:
    def install(**kwargs: Any) -> FakeYtDlp:
        fake = FakeYtDlp(**kwargs)
        monkeypatch.setattr(main, "run_ytdlp", fake)
        return fake

    return install


@pytest.fixture
def sample_video_url() -> str:
    return "https://example.com/watch?v=abc123"


def video_info(entry_id: str, title: str = "Clip", **extra: Any) -> dict[str, Any]:
    info = {
        "_type": "video",
        "id": entry_id,
        "title": title,
        "webpage_url": f"https://example.com/watch?v={entry_id}",
    }
    info.update(extra)
    return info


def flat_entry(entry_id: str, title: str | None = None) -> dict[str, Any]:
    return {
        "_type": "url",
        "id": entry_id,
        "url": f"https://example.com/watch?v={entry_id}",
        "title": title or f"Item {entry_id}",
    }


def playlist_info(title: str, entries: list[dict[str, Any]], **extra: Any) -> dict[str, Any]:
    info = {"_type": "playlist", "id": title.lower(), "title": title, "entries": entries}
    info.update(extra)
    return info
