"""
Unit tests for site profiles and format selection.
"""

import pytest

from main import (
    DEFAULT_PROFILE,
    SUBTITLE_ARGS,
    THUMBNAIL_ARGS,
    DownloadOptions,
    MediaKind,
    TargetFormat,
    build_download_args,
    profile_for,
    select_format,
    video_format_string,
)

URL = "https://example.com/watch?v=abc123"


class TestProfileFor:
    """Tests for hostname based profile lookup."""

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("https://www.facebook.com/watch/?v=1", "facebook"),
            ("https://m.facebook.com/reel/2", "facebook"),
            ("https://www.snapchat.com/spotlight/xyz", "snapchat"),
            ("https://cf-st.sc-cdn.net/d/abc.mp4", "snapchat-cdn"),
            ("https://www.newgrounds.com/portal/view/1", "newgrounds"),
            ("https://someblog.tumblr.com/post/1", "tumblr"),
            ("https://vimeo.com/123", "vimeo"),
            ("https://www.youtube.com/watch?v=x", "default"),
        ],
    )
    def test_matches(self, url: str, expected: str) -> None:
        assert profile_for(url).name == expected

    @staticmethod
    def test_domain_in_path_does_not_match() -> None:
        """Only the hostname is considered."""
        assert profile_for("https://example.com/share?u=facebook.com") is DEFAULT_PROFILE

    @staticmethod
    def test_lookalike_domain_does_not_match() -> None:
        assert profile_for("https://notfacebook.com/video").name == "default"


class TestVideoSelection:
    """Tests for video format expressions."""

    @staticmethod
    def test_720_without_high_fps() -> None:
        options = DownloadOptions(format=TargetFormat.mp4, resolution=720, highest_fps=False)
        selection = select_format(URL, options, "Clip")

        assert selection.format == (
            "bestvideo[vcodec^=avc][height<=720][fps<=30]+bestaudio[ext=m4a]"
            "/best[ext=mp4][height<=720][fps<=30]/best"
        )
        assert selection.output_args == ["--merge-output-format", "mp4"]

    @staticmethod
    def test_unconstrained() -> None:
        assert (
            video_format_string(None, True)
            == "bestvideo[vcodec^=avc]+bestaudio[ext=m4a]/best[ext=mp4]/best"
        )

    @staticmethod
    def test_height_only() -> None:
        fmt = video_format_string(1080, True)
        assert "[height<=1080]" in fmt
        assert "fps" not in fmt
        assert fmt.endswith("/best")

    @staticmethod
    def test_single_best_sites_ignore_preferences() -> None:
        options = DownloadOptions(format=TargetFormat.mp4, resolution=480, highest_fps=False)
        for url in (
            "https://www.facebook.com/watch/?v=1",
            "https://www.newgrounds.com/portal/view/1",
            "https://cf-st.sc-cdn.net/d/a.mp4",
            "https://x.tumblr.com/post/1",
        ):
            assert select_format(url, options).format == "best", url

    @staticmethod
    def test_single_best_site_still_merges_to_mp4() -> None:
        options = DownloadOptions(format=TargetFormat.mp4)
        selection = select_format("https://www.facebook.com/watch/?v=1", options)
        assert selection.output_args == ["--merge-output-format", "mp4"]


class TestAudioSelection:
    """Tests for audio format selection and codec normalization."""

    @staticmethod
    def test_ogg_normalized_to_vorbis() -> None:
        options = DownloadOptions(format=TargetFormat.ogg)
        selection = select_format(URL, options)

        assert options.kind == MediaKind.audio
        assert options.format == TargetFormat.ogg
        assert selection.format == "bestaudio/best"
        assert selection.output_args == ["-x", "--audio-format", "vorbis", "--audio-quality", "0"]

    @staticmethod
    def test_mp3_passthrough() -> None:
        selection = select_format(URL, DownloadOptions(format=TargetFormat.mp3))
        assert selection.output_args[:3] == ["-x", "--audio-format", "mp3"]

    @staticmethod
    def test_audio_ignores_resolution() -> None:
        options = DownloadOptions(format=TargetFormat.m4a, resolution=360, highest_fps=False)
        assert select_format(URL, options).format == "bestaudio/best"


class TestAuxiliaryFlags:
    """Tests for subtitle and thumbnail flags."""

    @staticmethod
    def test_subtitles_only_when_requested() -> None:
        without = select_format(URL, DownloadOptions())
        with_subs = select_format(URL, DownloadOptions(include_subtitles=True))

        assert without.subtitle_args == []
        assert with_subs.subtitle_args == SUBTITLE_ARGS
        assert "en.*" in with_subs.subtitle_args

    @staticmethod
    def test_thumbnail_added_by_default() -> None:
        assert select_format(URL, DownloadOptions(), "Plain title").thumbnail_args == THUMBNAIL_ARGS

    @staticmethod
    def test_thumbnail_skipped_for_wav() -> None:
        assert select_format(URL, DownloadOptions(format=TargetFormat.wav)).thumbnail_args == []

    @staticmethod
    def test_thumbnail_skipped_for_emoji_title() -> None:
        selection = select_format(URL, DownloadOptions(), "Party time \U0001f389")
        assert selection.thumbnail_args == []

    @staticmethod
    def test_digits_in_title_keep_thumbnail() -> None:
        selection = select_format(URL, DownloadOptions(), "Top 10 #1 hits")
        assert selection.thumbnail_args == THUMBNAIL_ARGS

    @staticmethod
    def test_thumbnail_skipped_for_tumblr() -> None:
        selection = select_format("https://x.tumblr.com/post/1", DownloadOptions())
        assert selection.thumbnail_args == []


class TestBuildDownloadArgs:
    """Tests for the yt-dlp argument vector."""

    @staticmethod
    def test_argument_layout() -> None:
        selection = select_format(URL, DownloadOptions(format=TargetFormat.mp3))
        args = build_download_args(
            selection,
            "/tmp/x/%(title)s.%(ext)s",
            [URL, "https://example.com/watch?v=def"],
            cookie_args=["--cookies", "/c.txt"],
            extra_args=["--sleep-interval", "5"],
            concurrent_fragments=4,
        )

        assert args[:5] == ["--no-playlist", "--no-write-comments", "--newline", "-o", "/tmp/x/%(title)s.%(ext)s"]
        assert args[args.index("--concurrent-fragments") + 1] == "4"
        assert args[args.index("-f") + 1] == "bestaudio/best"
        assert args[args.index("--match-filter") + 1] == "live_status != 'is_live'"
        assert args[-4:] == ["--cookies", "/c.txt", URL, "https://example.com/watch?v=def"]
        assert args.index("--sleep-interval") < args.index("-f")
