"""Tests for subtitle_normalizer.py: WebVTT conversion and timestamp shifting."""

import gzip
import io
import zipfile

import pytest

from error_handler import SubtitleParseError
from subtitle_normalizer import (
    _convert_with_pysubs2,
    decode_subtitle_bytes,
    detect_format,
    shift_timestamps,
    to_canonical,
    unpack_subtitle_payload,
)

SAMPLE_SRT_BYTES = b"1\n00:00:01,000 --> 00:00:02,000\nZipped\n\n"

SAMPLE_ASS = """[Script Info]
Title: Test
ScriptType: v4.00+

[Events]
Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text
Dialogue: 0,0:00:01.00,0:00:03.00,Default,,0,0,0,,{\\i1}First{\\i0} line\\Nsecond line
Dialogue: 0,1:02:03.45,1:02:05.00,Default,,0,0,0,,Comma, inside, text
"""


def test_detect_format():
    assert detect_format("WEBVTT\n\n00:00:01.000 --> 00:00:02.000\nHi\n") == "vtt"
    assert detect_format("\ufeffWEBVTT\n") == "vtt"
    assert detect_format(SAMPLE_ASS) == "ass"
    assert detect_format("1\n00:00:01,000 --> 00:00:02,000\nHi\n") == "srt"


def test_canonical_input_is_identity():
    vtt = "WEBVTT\n\nNOTE kept as is\n\n00:00:01.000 --> 00:00:02.000 line:10%\nHi\n"
    assert to_canonical(vtt) == vtt


def test_srt_conversion():
    result = to_canonical("1\n00:00:01,000 --> 00:00:03,000\nHello\n\n")
    assert result.startswith("WEBVTT\n\n")
    assert "00:00:01.000 --> 00:00:03.000\nHello" in result


def test_srt_without_index_lines():
    srt = "00:00:01,000 --> 00:00:02,000\nNo index\n\n00:00:03,000 --> 00:00:04,000\nStill none\n"
    result = to_canonical(srt)
    assert "00:00:01.000 --> 00:00:02.000\nNo index" in result
    assert "00:00:03.000 --> 00:00:04.000\nStill none" in result


def test_srt_windows_line_endings_and_multiline_cue():
    srt = "1\r\n00:00:01,000 --> 00:00:03,000\r\nLine one\r\nLine two\r\n\r\n"
    assert "00:00:01.000 --> 00:00:03.000\nLine one\nLine two" in to_canonical(srt)


def test_ass_dialogue_line_keeps_hundredths_and_strips_tags():
    result = to_canonical("Dialogue: 0,0:00:01.00,0:00:03.00,Default,,0,0,0,,Hi {\\an8}")
    assert "00:00:01.00 --> 00:00:03.00\nHi\n" in result


def test_ass_script_conversion():
    result = to_canonical(SAMPLE_ASS)
    assert "00:00:01.00 --> 00:00:03.00\nFirst line\nsecond line" in result
    # Text field may itself contain commas
    assert "01:02:03.45 --> 01:02:05.00\nComma, inside, text" in result
    assert "{" not in result


def test_ass_custom_format_order():
    ass = (
        "[Events]\n"
        "Format: Start, End, Text\n"
        "Dialogue: 0:00:05.50,0:00:06.00,Reordered\n"
    )
    assert "00:00:05.50 --> 00:00:06.00\nReordered" in to_canonical(ass)


def test_empty_input_gives_empty_document():
    assert to_canonical("") == "WEBVTT\n\n"
    assert to_canonical("   \n") == "WEBVTT\n\n"


def test_other_dialects_go_through_pysubs2():
    result = to_canonical("{0}{48}Hello from MicroDVD\n{72}{96}Second\n")
    assert result.startswith("WEBVTT")
    assert "Hello from MicroDVD" in result


def test_unrecognized_text_passes_through():
    raw = "this is not a subtitle file at all"
    assert to_canonical(raw) == raw


def test_autodetection_failure_is_a_parse_error():
    with pytest.raises(SubtitleParseError):
        _convert_with_pysubs2("this is not a subtitle file at all")


def test_shift_zero_offset_is_identity():
    text = "WEBVTT\n\n00:00:01.000 --> 00:00:02.000\nHi\n"
    assert shift_timestamps(text, 0) == text


def test_shift_subtracts_offset():
    text = "WEBVTT\n\n00:01:05.500 --> 00:01:07.000\nHi\n"
    assert "00:00:05.500 --> 00:00:07.000" in shift_timestamps(text, 60)


def test_shift_floors_at_zero():
    text = "00:00:10.000 --> 00:00:20.000\nA\n\n00:00:30.000 --> 00:00:40.000\nB\n"
    shifted = shift_timestamps(text, 25)
    assert "00:00:00.000 --> 00:00:00.000\nA" in shifted
    assert "00:00:05.000 --> 00:00:15.000\nB" in shifted


def test_shift_handles_hours_omitted_form():
    shifted = shift_timestamps("01:05.500 --> 01:07.000\nShort\n", 5)
    assert "00:01:00.500 --> 00:01:02.000" in shifted


def test_shift_renders_hundredths_as_milliseconds():
    assert "00:00:00.500 --> 00:00:02.500" in shift_timestamps("00:00:01.50 --> 00:00:03.50\nX\n", 1)


@pytest.mark.parametrize("start_ms,offset", [(0, 0.5), (999, 1), (61_250, 0.25), (3_600_000, 1800)])
def test_shift_equals_clamped_difference(start_ms, offset):
    def fmt(ms):
        h, rem = divmod(ms, 3_600_000)
        m, rem = divmod(rem, 60_000)
        s, milli = divmod(rem, 1000)
        return f"{h:02d}:{m:02d}:{s:02d}.{milli:03d}"

    expected = fmt(max(0, start_ms - int(offset * 1000)))
    shifted = shift_timestamps(f"{fmt(start_ms)} --> {fmt(start_ms + 1000)}\nx\n", offset)
    assert shifted.startswith(f"{expected} -->")


def test_shift_leaves_cue_text_alone():
    text = "00:00:10.000 --> 00:00:12.000\nMeet at 10:30 sharp\n"
    assert "Meet at 10:30 sharp" in shift_timestamps(text, 5)


def test_unpack_zip_prefers_subtitle_member():
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("readme.nfo", "info")
        zf.writestr("Movie.2010.srt", SAMPLE_SRT_BYTES)
    assert unpack_subtitle_payload(buf.getvalue()) == SAMPLE_SRT_BYTES


def test_unpack_gzip():
    assert unpack_subtitle_payload(gzip.compress(SAMPLE_SRT_BYTES)) == SAMPLE_SRT_BYTES


def test_unpack_raw_falls_through():
    assert unpack_subtitle_payload(SAMPLE_SRT_BYTES) == SAMPLE_SRT_BYTES


def test_decode_handles_bom_and_legacy_encodings():
    assert decode_subtitle_bytes(b"\xef\xbb\xbfHello") == "Hello"
    assert decode_subtitle_bytes("Café".encode("utf-8")) == "Café"
    assert decode_subtitle_bytes("Café".encode("cp1252")) == "Café"
    assert decode_subtitle_bytes("Hi".encode("utf-16")) == "Hi"
