import asyncio
import contextvars
import html
import json
import logging
import os
import re
import shlex
import shutil
import sys
import threading
import time
import unicodedata
import uuid
from collections import deque
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlparse
from zipfile import ZIP_DEFLATED, ZipFile

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from starlette.background import BackgroundTask
from starlette.requests import Request
from yt_dlp.utils import sanitize_filename

# ----------------------------
# Logging setup
# ----------------------------

_request_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")


class RequestIdFilter(logging.Filter):
    """Attach request_id to all log records for correlation."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id_ctx.get()
        return True


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s request_id=%(request_id)s %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("yt-dlp-relay")
logger.addFilter(RequestIdFilter())


# ----------------------------
# Settings
# ----------------------------

DEFAULT_DOWNLOAD_ROOT_ENV = "DOWNLOAD_ROOT"
DEFAULT_UPLOAD_ROOT_ENV = "UPLOAD_ROOT"
DEFAULT_JOB_TTL_HOURS_ENV = "JOB_TTL_HOURS"
DEFAULT_CLEANUP_INTERVAL_HOURS_ENV = "CLEANUP_INTERVAL_HOURS"
DEFAULT_EXPIRY_CHECK_SECONDS_ENV = "JOB_EXPIRY_CHECK_SECONDS"
DEFAULT_YTDLP_COMMAND_ENV = "YTDLP_COMMAND"
DEFAULT_CURL_BINARY_ENV = "CURL_BINARY"
DEFAULT_CONCURRENT_FRAGMENTS_ENV = "YTDLP_CONCURRENT_FRAGMENTS"
DEFAULT_PLAYLIST_SLEEP_THRESHOLD_ENV = "PLAYLIST_SLEEP_THRESHOLD"

# Cookie configuration environment variables
DEFAULT_COOKIES_FILE_ENV = "COOKIES_FILE"
DEFAULT_VIMEO_COOKIES_FILE_ENV = "VIMEO_COOKIES_FILE"


def _env_int(value: str | None, *, default: int) -> int:
    """Parse integer from environment variable with default."""
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(value: str | None, *, default: float) -> float:
    """Parse float from environment variable with default."""
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _default_ytdlp_command() -> list[str]:
    raw = os.getenv(DEFAULT_YTDLP_COMMAND_ENV)
    if raw and raw.strip():
        return shlex.split(raw)
    return [sys.executable, "-m", "yt_dlp"]


class Settings(BaseModel):
    """
    Service settings loaded from environment variables.

    - download_root: per-job directories and finished artifacts live here
    - upload_root: transient inbound files, swept with the same TTL
    - job_ttl_seconds: lifetime of a job (and its files) once created or made ready
    - cleanup_interval_seconds: period of the storage age sweep
    - expiry_check_seconds: how often per-job deadlines are checked
    """

    download_root: Path = Field(default=Path("./downloads"))
    upload_root: Path = Field(default=Path("./uploads"))
    job_ttl_seconds: float = Field(default=3 * 3600, gt=0)
    cleanup_interval_seconds: float = Field(default=3 * 3600, gt=0)
    expiry_check_seconds: float = Field(default=60, gt=0)
    ytdlp_command: list[str] = Field(default_factory=_default_ytdlp_command)
    curl_binary: str = Field(default="curl")
    concurrent_fragments: int = Field(default=10, ge=1)
    playlist_sleep_threshold: int = Field(default=50, ge=0)

    @classmethod
    def from_env(cls) -> "Settings":
        ttl_hours = _env_float(os.getenv(DEFAULT_JOB_TTL_HOURS_ENV), default=3.0)
        interval_hours = _env_float(os.getenv(DEFAULT_CLEANUP_INTERVAL_HOURS_ENV), default=3.0)
        cfg = cls(
            download_root=Path(os.getenv(DEFAULT_DOWNLOAD_ROOT_ENV, "./downloads")).resolve(),
            upload_root=Path(os.getenv(DEFAULT_UPLOAD_ROOT_ENV, "./uploads")).resolve(),
            job_ttl_seconds=ttl_hours * 3600,
            cleanup_interval_seconds=interval_hours * 3600,
            expiry_check_seconds=_env_float(
                os.getenv(DEFAULT_EXPIRY_CHECK_SECONDS_ENV), default=60.0
            ),
            curl_binary=os.getenv(DEFAULT_CURL_BINARY_ENV, "curl").strip() or "curl",
            concurrent_fragments=_env_int(os.getenv(DEFAULT_CONCURRENT_FRAGMENTS_ENV), default=10),
            playlist_sleep_threshold=_env_int(
                os.getenv(DEFAULT_PLAYLIST_SLEEP_THRESHOLD_ENV), default=50
            ),
        )
        logger.info(
            "Settings loaded download_root=%s upload_root=%s ttl_seconds=%s cleanup_interval_seconds=%s ytdlp=%s",
            cfg.download_root,
            cfg.upload_root,
            cfg.job_ttl_seconds,
            cfg.cleanup_interval_seconds,
            shlex.join(cfg.ytdlp_command),
        )
        return cfg


def _existing_file(path: str | None, env_name: str) -> str | None:
    if not path:
        return None
    path = path.strip()
    if not Path(path).is_file():
        logger.warning("%s points to non-existent file=%s", env_name, path)
        return None
    return path


class CookieConfig(BaseModel):
    """
    Credential files selected per site.

    - cookies_file: default cookies.txt, used for every site without its own file
    - vimeo_cookies_file: cookies.txt used for vimeo.com URLs
    """

    cookies_file: str | None = Field(default=None)
    vimeo_cookies_file: str | None = Field(default=None)

    @classmethod
    def from_env(cls) -> "CookieConfig":
        cfg = cls(
            cookies_file=_existing_file(os.getenv(DEFAULT_COOKIES_FILE_ENV), DEFAULT_COOKIES_FILE_ENV),
            vimeo_cookies_file=_existing_file(
                os.getenv(DEFAULT_VIMEO_COOKIES_FILE_ENV), DEFAULT_VIMEO_COOKIES_FILE_ENV
            ),
        )
        logger.info(
            "Cookie config loaded cookies_file=%s vimeo_cookies_file=%s",
            cfg.cookies_file,
            cfg.vimeo_cookies_file,
        )
        return cfg

    def for_key(self, key: str) -> str | None:
        if key == "vimeo":
            return self.vimeo_cookies_file
        return self.cookies_file


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


settings = Settings.from_env()
cookie_config = CookieConfig.from_env()
ensure_dir(settings.download_root)
ensure_dir(settings.upload_root)


# ----------------------------
# Errors
# ----------------------------


class MediaJobError(Exception):
    """Base class for failures that end a job with a user-facing message."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ClientInputError(MediaJobError):
    status_code = 400


class ResolutionError(MediaJobError):
    status_code = 422


class DownloadError(MediaJobError):
    status_code = 502


class RetryableDownloadError(DownloadError):
    """Upstream rejected the request in a way that usually clears up on a retry."""

    status_code = 503


class FatalDownloadError(DownloadError):
    status_code = 502


class MissingArtifactError(MediaJobError):
    status_code = 500


class JobExpiredError(MediaJobError):
    status_code = 500


# ----------------------------
# Utilities
# ----------------------------

_URL_RE = re.compile(r"https?://[^\s]+", re.IGNORECASE)

MEDIA_EXTENSIONS = (".m4a", ".mp3", ".mp4", ".mkv", ".webm", ".opus", ".ogg", ".flac", ".wav")


def extract_first_url(text: str) -> str:
    """Return the first absolute http(s) URL embedded in free text."""
    for match in _URL_RE.finditer(text or ""):
        candidate = match.group(0)
        if urlparse(candidate).netloc:
            return candidate
    raise ClientInputError("No valid URL found in the provided text.")


def has_symbol_chars(value: str | None) -> bool:
    """True when the text contains pictographic symbols such as emoji."""
    if not value:
        return False
    return any(unicodedata.category(ch) == "So" for ch in value)


# Leaves room for the job token and an extension under the usual 255-byte limit.
MAX_NAME_BYTES = 200


def safe_name(text: str, limit: int = MAX_NAME_BYTES) -> str:
    """Sanitize text for use as a path component, capped at limit UTF-8 bytes."""
    name = sanitize_filename(text)
    return name.encode("utf-8")[:limit].decode("utf-8", "ignore").strip()


def short_token(length: int = 16) -> str:
    return uuid.uuid4().hex[:length]


def find_media_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        p for p in directory.iterdir() if p.is_file() and p.name.lower().endswith(MEDIA_EXTENSIONS)
    )


def remove_path(path: Path | str | None) -> bool:
    """Best-effort recursive removal. Failures are logged and never raised."""
    if not path:
        return False
    p = Path(path)
    try:
        if p.is_dir() and not p.is_symlink():
            shutil.rmtree(p)
        elif p.exists() or p.is_symlink():
            p.unlink()
        else:
            return False
        logger.debug("Removed path=%s", p)
        return True
    except OSError:
        logger.exception("Failed to remove path=%s", p)
        return False


def zip_files(files: Sequence[Path], archive_path: Path) -> Path:
    logger.info("Creating zip archive=%s file_count=%d", archive_path, len(files))
    with ZipFile(archive_path, "w", compression=ZIP_DEFLATED) as zf:
        for f in files:
            zf.write(f, arcname=f.name)
    return archive_path


# ----------------------------
# Domain models
# ----------------------------


class MediaKind(str, Enum):
    audio = "audio"
    video = "video"


class TargetFormat(str, Enum):
    mp4 = "mp4"
    mp3 = "mp3"
    m4a = "m4a"
    ogg = "ogg"
    wav = "wav"
    flac = "flac"
    opus = "opus"


# Encodings whose user-facing name differs from the codec name yt-dlp expects.
AUDIO_CODEC_ALIASES = {"ogg": "vorbis"}


class DownloadOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    format: TargetFormat = TargetFormat.mp4
    resolution: int | None = None
    highest_fps: bool = True
    include_subtitles: bool = False

    @property
    def kind(self) -> MediaKind:
        return MediaKind.video if self.format == TargetFormat.mp4 else MediaKind.audio

    @property
    def audio_codec(self) -> str:
        return AUDIO_CODEC_ALIASES.get(self.format.value, self.format.value)


class DownloadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    media_url: str = Field(alias="mediaUrl", description="Free text containing the media URL")
    format: TargetFormat = TargetFormat.mp4
    resolution: int | None = Field(default=None, description="Maximum video height, e.g. 720")
    highest_fps: bool = Field(default=True, description="Allow frame rates above 30")
    include_subtitles: bool = Field(default=False, alias="includeSubtitles")

    @field_validator("resolution", mode="before")
    @classmethod
    def _blank_resolution(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower().removesuffix("p")
            if not value.isdigit():
                return None
        return value

    @field_validator("resolution")
    @classmethod
    def _positive_resolution(cls, value: int | None) -> int | None:
        return value if value is not None and value > 0 else None

    def to_options(self) -> DownloadOptions:
        return DownloadOptions(
            format=self.format,
            resolution=self.resolution,
            highest_fps=self.highest_fps,
            include_subtitles=self.include_subtitles,
        )


class Entry(BaseModel):
    id: str
    url: str
    title: str | None = None
    media_type: str | None = None
    direct: bool = False

    @classmethod
    def from_info(cls, info: dict[str, Any]) -> "Entry | None":
        entry_id = info.get("id")
        url = info.get("webpage_url") or info.get("url")
        if not entry_id or not url:
            return None
        return cls(
            id=str(entry_id),
            url=str(url),
            title=info.get("title"),
            media_type=info.get("media_type"),
        )


class CollectionInfo(BaseModel):
    title: str | None = None
    is_collection: bool = False


class Resolution(BaseModel):
    entries: list[Entry]
    collection: CollectionInfo


class JobStatus(str, Enum):
    created = "created"
    resolved = "resolved"
    downloading = "downloading"
    ready = "ready"
    delivering = "delivering"
    delivered = "delivered"
    expired = "expired"
    failed = "failed"


class Job(BaseModel):
    id: str
    status: JobStatus = JobStatus.created
    created_at: float
    expires_at: float
    artifact_path: str | None = None
    temp_dir: str | None = None


# ----------------------------
# Async execution
# ----------------------------

_EXECUTOR = ThreadPoolExecutor(
    max_workers=int(os.getenv("MAX_WORKERS", "4")), thread_name_prefix="relay-worker"
)


async def run_in_threadpool(func, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_EXECUTOR, lambda: func(*args, **kwargs))


# ----------------------------
# External tools
# ----------------------------

# Large --dump-single-json documents arrive as one line.
_STREAM_LIMIT = 16 * 1024 * 1024
_STDERR_TAIL_CHARS = 2000


class ProcessResult(BaseModel):
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""


def classify_failure(name: str, returncode: int, stderr: str) -> DownloadError:
    """Map a non-zero exit to the error surfaced to the user."""
    if "403" in stderr:
        return RetryableDownloadError(
            "A temporary error (403 Forbidden) occurred. Please try the download again."
        )
    tail = stderr.strip()[-_STDERR_TAIL_CHARS:]
    return FatalDownloadError(f"{name} exited with code {returncode}. Stderr: {tail}")


async def run_process(
    command: Sequence[str],
    *,
    name: str | None = None,
    capture_stdout: bool = False,
) -> ProcessResult:
    """
    Run one external process to completion.

    stdout is either captured (metadata / page scrape) or logged line by line
    (download progress); stderr is always captured for diagnostics. A non-zero
    exit raises RetryableDownloadError or FatalDownloadError.
    """
    name = name or Path(command[0]).name
    logger.info("Executing command name=%s argv=%s", name, shlex.join(command))
    start = time.monotonic()
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_STREAM_LIMIT,
        )
    except OSError as exc:
        logger.error("Failed to start command name=%s error=%s", name, exc)
        raise FatalDownloadError(f"Could not start {name}: {exc}") from exc

    async def read_stdout() -> str:
        assert proc.stdout is not None
        if capture_stdout:
            return (await proc.stdout.read()).decode("utf-8", errors="replace")
        async for raw in proc.stdout:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                logger.debug("%s: %s", name, line)
        return ""

    async def read_stderr() -> str:
        assert proc.stderr is not None
        return (await proc.stderr.read()).decode("utf-8", errors="replace")

    stdout, stderr = await asyncio.gather(read_stdout(), read_stderr())
    returncode = await proc.wait()
    elapsed_ms = int((time.monotonic() - start) * 1000)

    if returncode != 0:
        logger.warning(
            "Command failed name=%s returncode=%d elapsed_ms=%d stderr=%s",
            name,
            returncode,
            elapsed_ms,
            stderr.strip()[-200:],
        )
        raise classify_failure(name, returncode, stderr)

    logger.info("Command done name=%s elapsed_ms=%d", name, elapsed_ms)
    return ProcessResult(returncode=returncode, stdout=stdout, stderr=stderr)


async def run_ytdlp(args: Sequence[str], *, capture_stdout: bool = False) -> ProcessResult:
    return await run_process(
        [*settings.ytdlp_command, *args], name="yt-dlp", capture_stdout=capture_stdout
    )


async def run_curl(args: Sequence[str], *, capture_stdout: bool = False) -> ProcessResult:
    return await run_process([settings.curl_binary, *args], name="curl", capture_stdout=capture_stdout)


# ----------------------------
# Site profiles
# ----------------------------


class SiteProfile:
    """
    Per-site behaviour keyed by hostname.

    The default profile sends everything through the general resolver and
    the full format policy. Named profiles override individual knobs, and may
    replace resolution entirely by returning a Resolution from resolve().
    """

    def __init__(
        self,
        name: str,
        domains: Sequence[str] = (),
        *,
        single_best_format: bool = False,
        embed_thumbnail: bool = True,
        cookie_key: str = "default",
    ):
        self.name = name
        self.domains = tuple(d.lower() for d in domains)
        self.single_best_format = single_best_format
        self.embed_thumbnail = embed_thumbnail
        self.cookie_key = cookie_key

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"

    def matches(self, url: str) -> bool:
        host = (urlparse(url).hostname or "").lower()
        return any(host == d or host.endswith("." + d) for d in self.domains)

    async def resolve(self, url: str, cookie_args: list[str]) -> Resolution | None:
        return None


class FacebookProfile(SiteProfile):
    """Facebook pages only give a reliable title; the download itself goes through yt-dlp."""

    def __init__(self) -> None:
        super().__init__("facebook", ("facebook.com",), single_best_format=True)

    @staticmethod
    def split_title(raw_title: str) -> tuple[str, str]:
        messy = raw_title.strip()
        parts = [p.strip() for p in messy.split("｜")]
        title = f"Facebook-Video-{short_token(8)}"
        uploader = "Unknown Uploader"
        if len(parts) >= 2:
            uploader = parts[-1]
            title = parts[-2]
        elif messy:
            title = messy
        return title, uploader

    async def resolve(self, url: str, cookie_args: list[str]) -> Resolution | None:
        try:
            result = await run_ytdlp(["--get-title", *cookie_args, url], capture_stdout=True)
        except DownloadError as exc:
            raise ResolutionError("Could not fetch title for Facebook video.") from exc
        title, uploader = self.split_title(result.stdout)
        full_title = f"{uploader} - {title}"
        logger.info("Facebook title resolved url=%s title=%s", url, full_title)
        return Resolution(
            entries=[Entry(id=url, url=url, title=full_title)],
            collection=CollectionInfo(title=full_title, is_collection=False),
        )


_SNAPCHAT_PRELOAD_RE = re.compile(r'<link[^>]+rel="preload"[^>]+href="([^"]+)"[^>]+as="video"')


class SnapchatProfile(SiteProfile):
    """Spotlight pages expose the video only as a preload link in the HTML."""

    title = "Snapchat - Spotlight Video"

    def __init__(self) -> None:
        super().__init__("snapchat", ("snapchat.com",))

    @staticmethod
    def extract_direct_url(page: str) -> str | None:
        match = _SNAPCHAT_PRELOAD_RE.search(page)
        if not match:
            return None
        return html.unescape(match.group(1))

    async def resolve(self, url: str, cookie_args: list[str]) -> Resolution | None:
        try:
            result = await run_curl(["-L", url], capture_stdout=True)
        except DownloadError as exc:
            raise ResolutionError("Failed to fetch Snapchat page content.") from exc
        direct_url = self.extract_direct_url(result.stdout)
        if not direct_url:
            raise ResolutionError("Could not find direct video link in Snapchat page.")
        return Resolution(
            entries=[Entry(id=url, url=direct_url, title=self.title, direct=True)],
            collection=CollectionInfo(title=self.title, is_collection=False),
        )


DEFAULT_PROFILE = SiteProfile("default")

SITE_PROFILES: list[SiteProfile] = [
    FacebookProfile(),
    SnapchatProfile(),
    SiteProfile("snapchat-cdn", ("sc-cdn.net",), single_best_format=True),
    SiteProfile("newgrounds", ("newgrounds.com",), single_best_format=True),
    SiteProfile("tumblr", ("tumblr.com",), single_best_format=True, embed_thumbnail=False),
    SiteProfile("vimeo", ("vimeo.com",), cookie_key="vimeo"),
]


def profile_for(url: str) -> SiteProfile:
    for profile in SITE_PROFILES:
        if profile.matches(url):
            return profile
    return DEFAULT_PROFILE


def cookie_args_for(url: str, cookies: CookieConfig | None = None) -> list[str]:
    if cookies is None:
        cookies = cookie_config
    cookie_file = cookies.for_key(profile_for(url).cookie_key)
    return ["--cookies", cookie_file] if cookie_file else []


# ----------------------------
# Format policy
# ----------------------------

LIVE_MATCH_FILTER = "live_status != 'is_live'"
SUBTITLE_ARGS = [
    "--write-auto-subs",
    "--write-subs",
    "--embed-subs",
    "--sub-langs",
    "en.*",
    "--convert-subs",
    "srt",
]
THUMBNAIL_ARGS = ["--write-thumbnail", "--embed-thumbnail", "--convert-thumbnails", "jpg"]
# Containers that cannot carry an embedded cover image.
NO_THUMBNAIL_FORMATS = {TargetFormat.wav}


class FormatSelection(BaseModel):
    model_config = ConfigDict(frozen=True)

    format: str
    thumbnail_args: list[str] = Field(default_factory=list)
    subtitle_args: list[str] = Field(default_factory=list)
    output_args: list[str] = Field(default_factory=list)


def video_format_string(resolution: int | None, highest_fps: bool) -> str:
    height = f"[height<={resolution}]" if resolution else ""
    fps = "" if highest_fps else "[fps<=30]"
    return f"bestvideo[vcodec^=avc]{height}{fps}+bestaudio[ext=m4a]/best[ext=mp4]{height}{fps}/best"


def thumbnail_skip_reason(
    options: DownloadOptions, profile: SiteProfile, title: str | None
) -> str | None:
    if options.format in NO_THUMBNAIL_FORMATS:
        return f"format={options.format.value}"
    if has_symbol_chars(title):
        return "symbol characters in title"
    if not profile.embed_thumbnail:
        return f"site={profile.name}"
    return None


def select_format(url: str, options: DownloadOptions, title: str | None = None) -> FormatSelection:
    """
    Build the yt-dlp format expression and auxiliary flags for one download.

    First match wins: sites that reject format negotiation always get "best";
    video prefers AVC + m4a capped by height/fps and merged into mp4; audio
    takes the best audio stream and extracts it to the requested codec.
    """
    profile = profile_for(url)
    is_video = options.kind == MediaKind.video

    if profile.single_best_format:
        fmt = "best"
    elif is_video:
        fmt = video_format_string(options.resolution, options.highest_fps)
    else:
        fmt = "bestaudio/best"

    if is_video:
        output_args = ["--merge-output-format", "mp4"]
    else:
        output_args = ["-x", "--audio-format", options.audio_codec, "--audio-quality", "0"]

    skip_reason = thumbnail_skip_reason(options, profile, title)
    if skip_reason:
        logger.info("Skipping thumbnail embedding reason=%s url=%s", skip_reason, url)

    return FormatSelection(
        format=fmt,
        thumbnail_args=[] if skip_reason else list(THUMBNAIL_ARGS),
        subtitle_args=list(SUBTITLE_ARGS) if options.include_subtitles else [],
        output_args=output_args,
    )


def build_download_args(
    selection: FormatSelection,
    out_template: str,
    urls: Sequence[str],
    *,
    cookie_args: Sequence[str] = (),
    extra_args: Sequence[str] = (),
    concurrent_fragments: int = 10,
) -> list[str]:
    return [
        "--no-playlist",
        "--no-write-comments",
        "--newline",
        "-o",
        out_template,
        "--embed-metadata",
        "--concurrent-fragments",
        str(concurrent_fragments),
        *extra_args,
        *selection.thumbnail_args,
        *selection.subtitle_args,
        "-f",
        selection.format,
        "--match-filter",
        LIVE_MATCH_FILTER,
        *selection.output_args,
        *cookie_args,
        *urls,
    ]


# ----------------------------
# Source resolution
# ----------------------------


def dedupe_entries(entries: Sequence[Entry]) -> list[Entry]:
    seen: set[str] = set()
    unique: list[Entry] = []
    for entry in entries:
        if entry.id in seen:
            continue
        seen.add(entry.id)
        unique.append(entry)
    return unique


class SourceResolver:
    """Flatten a URL (playlists, nested playlists, transparent redirects) into entries."""

    def __init__(self, cookies: CookieConfig | None = None):
        self.cookies = cookies

    def _cookie_args(self, url: str) -> list[str]:
        return cookie_args_for(url, self.cookies)

    async def fetch_metadata(self, url: str) -> str:
        args = ["--dump-single-json", "--flat-playlist", "--match-filter", LIVE_MATCH_FILTER]
        try:
            result = await run_ytdlp([*args, *self._cookie_args(url), url], capture_stdout=True)
        except RetryableDownloadError:
            raise
        except DownloadError as exc:
            raise ResolutionError(f"Metadata fetch for {url} failed. {exc.message}") from exc
        return result.stdout

    async def resolve(self, url: str) -> Resolution:
        profile = profile_for(url)
        shortcut = await profile.resolve(url, self._cookie_args(url))
        if shortcut is not None:
            logger.info("Resolved via site shortcut profile=%s url=%s", profile.name, url)
            return shortcut

        found: list[Entry] = []
        queue: deque[str] = deque([url])
        probed: set[str] = set()
        collection: CollectionInfo | None = None

        while queue:
            current = queue.popleft()
            if current in probed:
                continue
            probed.add(current)

            raw = await self.fetch_metadata(current)
            try:
                metadata = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Could not parse metadata url=%s", current)
                continue
            if not isinstance(metadata, dict):
                logger.warning("Unexpected metadata shape url=%s type=%s", current, type(metadata).__name__)
                continue

            if collection is None:
                collection = CollectionInfo(
                    title=metadata.get("title"),
                    is_collection=metadata.get("_type") == "playlist",
                )

            if metadata.get("entries") is not None:
                found.extend(self._flatten(metadata["entries"], queue, probed))
            elif metadata.get("url") or metadata.get("webpage_url"):
                entry = Entry.from_info(metadata)
                if entry:
                    found.append(entry)

        entries = dedupe_entries(found)
        if collection is None:
            collection = CollectionInfo(title=f"Content from {url}", is_collection=True)
        logger.info(
            "Resolved url=%s probed=%d found=%d unique=%d is_collection=%s",
            url,
            len(probed),
            len(found),
            len(entries),
            collection.is_collection,
        )
        if not entries:
            raise ResolutionError("No downloadable media found.")
        return Resolution(entries=entries, collection=collection)

    @staticmethod
    def _flatten(entries: Sequence[Any], queue: deque[str], probed: set[str]) -> list[Entry]:
        """Depth-first over nested playlists without recursion; redirects go to the queue."""
        found: list[Entry] = []
        stack: list[Any] = list(reversed(entries))
        while stack:
            item = stack.pop()
            if not isinstance(item, dict):
                continue
            kind = item.get("_type")
            if kind == "playlist" and item.get("entries") is not None:
                stack.extend(reversed(item["entries"]))
            elif kind == "url_transparent" and item.get("url"):
                if item["url"] not in probed:
                    queue.append(item["url"])
            elif item.get("url"):
                entry = Entry.from_info(item)
                if entry:
                    found.append(entry)
        return found


# ----------------------------
# Job registry
# ----------------------------


class JobRegistry:
    """
    In-memory job table. Owns every job directory and artifact.

    Jobs are removed after their first completed delivery, on failure, or when their deadline
    passes; removal deletes the job's directory.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def create(self) -> Job:
        now = self._clock()
        job = Job(id=str(uuid.uuid4()), created_at=now, expires_at=now + self.ttl_seconds)
        with self._lock:
            self._jobs[job.id] = job
        logger.info("Created job job_id=%s", job.id)
        return job

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def set_status(self, job_id: str, status: JobStatus) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                logger.warning("Status update for missing job job_id=%s status=%s", job_id, status.value)
                return
            job.status = status
        logger.info("Job status job_id=%s status=%s", job_id, status.value)

    def attach_dir(self, job_id: str, path: Path) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobExpiredError("Job expired before the download finished.")
            job.temp_dir = str(path)

    def bind_artifact(self, job_id: str, path: Path) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobExpiredError("Job expired before the download finished.")
            job.artifact_path = str(path)
            job.status = JobStatus.ready
            job.expires_at = self._clock() + self.ttl_seconds
        logger.info("Job ready job_id=%s artifact=%s", job_id, path)
        return job

    def take(self, job_id: str) -> Job | None:
        """
        Claim a ready job for delivery.

        The job stays registered as `delivering` until release() or restore(),
        so concurrent retrievals see nothing and the deadline still applies.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.ready:
                return None
            job.status = JobStatus.delivering
        logger.info("Job delivering job_id=%s", job_id)
        return job

    def restore(self, job_id: str) -> bool:
        """Hand a job whose delivery failed back to the ready state."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.delivering:
                return False
            job.status = JobStatus.ready
        logger.warning("Delivery interrupted, job ready again job_id=%s", job_id)
        return True

    @staticmethod
    def remove_files(job: Job) -> None:
        if job.artifact_path:
            remove_path(job.artifact_path)
        if job.temp_dir:
            remove_path(job.temp_dir)

    def release(self, job: Job) -> None:
        """Drop the job and its files after a completed delivery."""
        with self._lock:
            self._jobs.pop(job.id, None)
        self.remove_files(job)
        job.status = JobStatus.delivered
        logger.info("Job delivered job_id=%s", job.id)

    def discard(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.pop(job_id, None)
        if job is None:
            return None
        job.status = JobStatus.failed
        self.remove_files(job)
        logger.info("Job discarded job_id=%s", job_id)
        return job

    def expire_sweep(self, now: float | None = None) -> list[str]:
        now = self._clock() if now is None else now
        with self._lock:
            expired = [job for job in self._jobs.values() if job.expires_at <= now]
            for job in expired:
                del self._jobs[job.id]
        for job in expired:
            job.status = JobStatus.expired
            self.remove_files(job)
            logger.info("Job expired job_id=%s", job.id)
        return [job.id for job in expired]


# ----------------------------
# Dispatch
# ----------------------------

OUTPUT_TEMPLATE = "%(uploader,channel)s - %(title)s.%(ext)s"


class DownloadDispatcher:
    """Drive one job from resolution to a bound artifact."""

    def __init__(
        self,
        registry: JobRegistry,
        resolver: SourceResolver,
        config: Settings,
        cookies: CookieConfig | None = None,
    ):
        self.registry = registry
        self.resolver = resolver
        self.config = config
        self.cookies = cookies

    async def process(self, job_id: str, url: str, options: DownloadOptions) -> Path:
        start = time.monotonic()
        resolution = await self.resolver.resolve(url)
        self.registry.set_status(job_id, JobStatus.resolved)

        entries = resolution.entries
        collection = resolution.collection
        self.registry.set_status(job_id, JobStatus.downloading)
        if len(entries) == 1 and not collection.is_collection:
            artifact = await self.download_single(job_id, entries[0], options)
        else:
            artifact = await self.download_collection(job_id, url, entries, collection.title, options)

        self.registry.bind_artifact(job_id, artifact)
        logger.info(
            "Job processed job_id=%s entries=%d elapsed_ms=%d",
            job_id,
            len(entries),
            int((time.monotonic() - start) * 1000),
        )
        return artifact

    def _make_job_dir(self, job_id: str, label: str) -> Path:
        job_dir = self.config.download_root / f"{safe_name(label) or 'download'}-{short_token(16)}"
        job_dir.mkdir(parents=True, exist_ok=True)
        self.registry.attach_dir(job_id, job_dir)
        logger.debug("Job dir created job_id=%s dir=%s", job_id, job_dir)
        return job_dir

    async def download_single(self, job_id: str, entry: Entry, options: DownloadOptions) -> Path:
        job_dir = self._make_job_dir(job_id, entry.title or "download")

        if entry.direct:
            output = job_dir / f"{safe_name(entry.title or 'video') or 'video'}.mp4"
            await run_curl(["-L", "--fail", entry.url, "-o", str(output), "--progress-bar"])
            if not output.is_file():
                raise MissingArtifactError("Could not locate downloaded media file.")
            return output

        selection = select_format(entry.url, options, entry.title)
        args = build_download_args(
            selection,
            str(job_dir / OUTPUT_TEMPLATE),
            [entry.url],
            cookie_args=cookie_args_for(entry.url, self.cookies),
            concurrent_fragments=self.config.concurrent_fragments,
        )
        await run_ytdlp(args)

        media = await run_in_threadpool(find_media_files, job_dir)
        if not media:
            raise MissingArtifactError("Could not locate downloaded media file.")
        return media[0]

    async def download_collection(
        self,
        job_id: str,
        url: str,
        entries: Sequence[Entry],
        title: str | None,
        options: DownloadOptions,
    ) -> Path:
        job_dir = self._make_job_dir(job_id, title or "playlist")

        titles = " ".join(e.title for e in entries if e.title)
        selection = select_format(url, options, f"{title or ''} {titles}")
        extra_args = ["--ignore-errors"]
        if len(entries) > self.config.playlist_sleep_threshold:
            extra_args += ["--sleep-interval", "5", "--max-sleep-interval", "10"]
        args = build_download_args(
            selection,
            str(job_dir / OUTPUT_TEMPLATE),
            [e.url for e in entries],
            cookie_args=cookie_args_for(url, self.cookies),
            extra_args=extra_args,
            concurrent_fragments=self.config.concurrent_fragments,
        )

        try:
            await run_ytdlp(args)
        except DownloadError as exc:
            if not await run_in_threadpool(find_media_files, job_dir):
                raise
            logger.warning(
                "Collection finished with errors, keeping partial result job_id=%s error=%s",
                job_id,
                exc.message[:200],
            )

        media = await run_in_threadpool(find_media_files, job_dir)
        logger.info("Collection download done job_id=%s entries=%d files=%d", job_id, len(entries), len(media))
        if not media:
            raise MissingArtifactError("Could not find downloaded file in playlist directory.")
        if len(media) == 1:
            return media[0]
        return await run_in_threadpool(zip_files, media, job_dir / f"{job_dir.name}.zip")


# ----------------------------
# Cleanup scheduler
# ----------------------------


class CleanupScheduler:
    """
    One background loop for both reclamation paths.

    Every tick expires jobs whose deadline passed. Every cleanup interval it
    also removes anything under the storage roots older than the TTL, whether
    or not a job still references it.
    """

    def __init__(
        self,
        registry: JobRegistry,
        roots: Sequence[Path],
        ttl_seconds: float,
        sweep_interval_seconds: float,
        check_interval_seconds: float,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.roots = list(roots)
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.check_interval_seconds = check_interval_seconds
        self._clock = clock
        self._last_sweep: float | None = None
        self._task: asyncio.Task | None = None

    def sweep_storage(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        removed = 0
        for root in self.roots:
            try:
                children = list(root.iterdir())
            except FileNotFoundError:
                continue
            except OSError:
                logger.exception("Cleanup failed to list root=%s", root)
                continue
            for child in children:
                try:
                    age = now - child.lstat().st_mtime
                except FileNotFoundError:
                    continue
                if age > self.ttl_seconds and remove_path(child):
                    removed += 1
        self._last_sweep = now
        if removed:
            logger.info("Storage sweep removed=%d", removed)
        return removed

    def tick(self, now: float | None = None) -> None:
        now = self._clock() if now is None else now
        self.registry.expire_sweep(now)
        if self._last_sweep is None or now - self._last_sweep >= self.sweep_interval_seconds:
            self.sweep_storage(now)

    async def run_forever(self) -> None:
        while True:
            try:
                await run_in_threadpool(self.tick)
            except Exception:
                logger.exception("Periodic cleanup failed")
            await asyncio.sleep(self.check_interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
            logger.info(
                "Cleanup scheduler started check_interval_seconds=%s sweep_interval_seconds=%s",
                self.check_interval_seconds,
                self.sweep_interval_seconds,
            )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


registry = JobRegistry(ttl_seconds=settings.job_ttl_seconds)
resolver = SourceResolver(cookie_config)
dispatcher = DownloadDispatcher(registry, resolver, settings, cookie_config)
scheduler = CleanupScheduler(
    registry,
    [settings.download_root, settings.upload_root],
    ttl_seconds=settings.job_ttl_seconds,
    sweep_interval_seconds=settings.cleanup_interval_seconds,
    check_interval_seconds=settings.expiry_check_seconds,
)


# ----------------------------
# FastAPI
# ----------------------------


@asynccontextmanager
async def lifespan(_app: FastAPI):
    scheduler.start()
    try:
        yield
    finally:
        await scheduler.stop()


app = FastAPI(
    title="yt-dlp relay",
    description="Resolve a media URL, download it with yt-dlp and hand the file out once",
    lifespan=lifespan,
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    token = _request_id_ctx.set(request_id)
    start = time.monotonic()
    try:
        logger.info("Request start method=%s path=%s", request.method, request.url.path)
        response = await call_next(request)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Request end method=%s path=%s status=%d elapsed_ms=%d",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Content-Type-Options"] = "nosniff"
        return response
    finally:
        _request_id_ctx.reset(token)


@app.post("/download", response_class=JSONResponse)
async def api_download(request: DownloadRequest):
    try:
        url = extract_first_url(request.media_url)
    except ClientInputError as exc:
        logger.info("Rejected download request reason=%s", exc.message)
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc

    options = request.to_options()
    job = registry.create()
    logger.info(
        "Download request job_id=%s url=%s format=%s resolution=%s highest_fps=%s subtitles=%s",
        job.id,
        url,
        options.format.value,
        options.resolution,
        options.highest_fps,
        options.include_subtitles,
    )
    try:
        await dispatcher.process(job.id, url, options)
    except MediaJobError as exc:
        logger.warning("Job failed job_id=%s error=%s", job.id, exc.message[:500])
        await run_in_threadpool(registry.discard, job.id)
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    except Exception as exc:
        logger.exception("Job failed unexpectedly job_id=%s error=%s", job.id, exc)
        await run_in_threadpool(registry.discard, job.id)
        raise HTTPException(status_code=500, detail=str(exc) or "Unknown error") from exc

    return {"status": "success", "job_id": job.id, "download_url": f"/file/{job.id}"}


class JobFileResponse(FileResponse):
    """
    Stream a job's artifact and settle the job afterwards.

    A completed stream releases the job; a stream that fails part way hands
    it back to the registry so the client can retry.
    """

    def __init__(self, job: Job, job_registry: JobRegistry):
        path = Path(job.artifact_path)
        super().__init__(
            path=str(path),
            filename=path.name,
            media_type="application/octet-stream",
            background=BackgroundTask(job_registry.release, job),
        )
        self.job = job
        self.job_registry = job_registry

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except BaseException:
            self.job_registry.restore(self.job.id)
            raise


@app.get("/file/{job_id}", response_class=FileResponse)
async def api_file(job_id: str):
    job = registry.take(job_id)
    if job is None or not job.artifact_path:
        logger.info("File not found job_id=%s", job_id)
        raise HTTPException(status_code=404, detail="File not found or job has expired.")

    path = Path(job.artifact_path)
    if not path.is_file():
        logger.warning("Artifact missing on disk job_id=%s path=%s", job_id, path)
        await run_in_threadpool(registry.discard, job.id)
        raise HTTPException(status_code=404, detail="File not found or job has expired.")

    logger.info("Serving file job_id=%s path=%s", job_id, path)
    return JobFileResponse(job, registry)


def start_api() -> None:
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    logger.info("Starting uvicorn host=%s port=%s", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    logger.info("Starting yt-dlp relay server...")
    start_api()
