"""Tests for ffmpeg argument builders and drawtext escaping."""

import pytest

from mediaforge.modules.transcoding.ffmpeg import (
    build_animated_preview_args,
    build_audio_args,
    build_drawtext_filter,
    build_hls_args,
    build_preview_args,
    build_sprite_args,
    build_thumbnail_args,
    build_video_args,
    build_waveform_args,
    build_waveform_pcm_args,
    escape_drawtext,
    scale_and_pad,
)
from mediaforge.modules.transcoding.models import (
    AUDIO_PRESETS,
    VIDEO_PRESETS_BY_NAME,
    WatermarkPosition,
)
from mediaforge.modules.transcoding.schemas import ProcessingOptions, Watermark


class TestDrawtextEscaping:
    def test_plain_text_is_unchanged(self) -> None:
        assert escape_drawtext("mediaforge") == "mediaforge"

    def test_colon_is_escaped_for_option_and_graph(self) -> None:
        # \: at option level, then the backslash itself is escaped for the graph
        assert escape_drawtext("a:b") == "a\\\\:b"

    @pytest.mark.parametrize("char", [",", ";", "[", "]"])
    def test_filtergraph_separators_are_escaped(self, char: str) -> None:
        assert escape_drawtext(f"x{char}y") == f"x\\{char}y"

    def test_quote_cannot_terminate_the_option(self) -> None:
        escaped = escape_drawtext("it's")
        assert "'" in escaped
        assert escaped.index("'") > 0
        assert escaped[escaped.index("'") - 1] == "\\"

    @pytest.mark.parametrize("position,x,y", [
        (WatermarkPosition.TOP_LEFT, "10", "10"),
        (WatermarkPosition.BOTTOM_RIGHT, "w-tw-10", "h-th-10"),
        (WatermarkPosition.CENTER, "(w-tw)/2", "(h-th)/2"),
    ])
    def test_drawtext_position(self, position, x, y) -> None:
        text = build_drawtext_filter(Watermark(text="hello", position=position))

        assert text.startswith("drawtext=text=hello:")
        assert f":x={x}:y={y}" in text
        assert text.endswith("expansion=none")


class TestVideoArgs:
    def test_rendition_arguments(self) -> None:
        preset = VIDEO_PRESETS_BY_NAME["720p"]
        args = build_video_args("in.mov", "out.mp4", preset, ProcessingOptions())

        assert args[:2] == ["-i", "in.mov"]
        assert args[-1] == "out.mp4"
        assert args[args.index("-c:v") + 1] == "libx264"
        assert args[args.index("-c:a") + 1] == "aac"
        assert args[args.index("-b:v") + 1] == preset.video_bitrate
        assert args[args.index("-b:a") + 1] == preset.audio_bitrate
        assert args[args.index("-vf") + 1] == scale_and_pad(1280, 720)
        assert args[args.index("-movflags") + 1] == "+faststart"
        assert args[args.index("-af") + 1] == "loudnorm"

    def test_normalization_can_be_disabled(self) -> None:
        args = build_video_args(
            "in.mov",
            "out.mp4",
            VIDEO_PRESETS_BY_NAME["360p"],
            ProcessingOptions(audio_normalization=False),
        )
        assert "-af" not in args

    def test_watermark_is_appended_to_the_scale_filter(self) -> None:
        options = ProcessingOptions(watermark=Watermark(text="demo", position="top-right"))
        args = build_video_args("in.mov", "out.mp4", VIDEO_PRESETS_BY_NAME["480p"], options)

        video_filter = args[args.index("-vf") + 1]
        assert video_filter.startswith(scale_and_pad(854, 480) + ",drawtext=")
        assert "x=w-tw-10:y=10" in video_filter


class TestOtherArgs:
    def test_audio_args(self) -> None:
        preset = AUDIO_PRESETS[0]
        args = build_audio_args("in.wav", "out.mp3", preset, normalize=False)

        assert "-vn" in args
        assert args[args.index("-c:a") + 1] == "libmp3lame"
        assert args[args.index("-b:a") + 1] == preset.bitrate
        assert args[args.index("-ar") + 1] == str(preset.sample_rate)
        assert "-af" not in args
        assert args[-1] == "out.mp3"

    def test_thumbnail_seeks_before_input(self) -> None:
        args = build_thumbnail_args("in.mp4", "thumb.jpg", 12.5)

        assert args[:4] == ["-ss", "12.500", "-i", "in.mp4"]
        assert args[args.index("-frames:v") + 1] == "1"

    def test_preview_window(self) -> None:
        args = build_preview_args("in.mp4", "preview.mp4", 30.0, 15.0)

        assert args[:2] == ["-ss", "30.000"]
        assert args[args.index("-t") + 1] == "15.000"

    def test_hls_args(self, tmp_path) -> None:
        playlist = str(tmp_path / "playlist.m3u8")
        segments = str(tmp_path / "segment%03d.ts")
        args = build_hls_args("in.mp4", playlist, segments)

        assert args[args.index("-hls_time") + 1] == "4"
        assert args[args.index("-hls_playlist_type") + 1] == "vod"
        assert args[args.index("-hls_segment_filename") + 1] == segments
        assert args[args.index("-f") + 1] == "hls"
        assert args[-1] == playlist

    def test_sprite_samples_one_frame_per_tile(self) -> None:
        args = build_sprite_args("in.mp4", "sprite.jpg", 200.0)
        video_filter = args[args.index("-vf") + 1]

        assert video_filter == "fps=0.500000,scale=160:90,tile=10x10"

    def test_sprite_with_unknown_duration(self) -> None:
        args = build_sprite_args("in.mp4", "sprite.jpg", 0.0)
        assert args[args.index("-vf") + 1].startswith("fps=0.100000,")

    def test_waveform_args(self) -> None:
        args = build_waveform_args("in.mp3", "wave.png")
        assert args[args.index("-filter_complex") + 1] == "showwavespic=s=1200x300:colors=0x3b82f6"

    def test_animated_preview_builds_palette_in_one_pass(self) -> None:
        args = build_animated_preview_args("in.mp4", "preview.gif", 10.0)

        assert args[:6] == ["-ss", "10.000", "-t", "3.000", "-i", "in.mp4"]
        graph = args[args.index("-filter_complex") + 1]
        assert graph.startswith("fps=10,scale=480:270:flags=lanczos,split[frames][copy];")
        assert "palettegen=reserve_transparent=0" in graph
        assert graph.endswith("[frames][palette]paletteuse")
        assert args[-3:] == ["-loop", "0", "preview.gif"]

    def test_waveform_pcm_args(self) -> None:
        args = build_waveform_pcm_args("in.mp3", "peaks.wav")

        assert args == [
            "-i", "in.mp3", "-vn", "-map", "0:a:0", "-ac", "1", "-ar", "8000",
            "-c:a", "pcm_s16le", "-f", "wav", "peaks.wav",
        ]
