"""Tests for imagepuppet.recognition module."""

from __future__ import annotations

from io import BytesIO
from unittest.mock import patch

import pytest
from PIL import Image

from imagepuppet.models import Frame
from imagepuppet.recognition import (
    GlobRecognizer,
    LiteralRecognizer,
    OcrRecognizer,
    RecognitionError,
    recognizer_for,
    tesseract_text,
)


def _text(value: str) -> Frame:
    return Frame(kind="text", data=value.encode())


def _image() -> Frame:
    buf = BytesIO()
    Image.new("RGB", (8, 8), "black").save(buf, format="PNG")
    return Frame(kind="image", data=buf.getvalue())


class TestLiteralRecognizer:
    def test_case_insensitive_substring(self):
        matches = LiteralRecognizer("Login:").recognize(_text("Ubuntu 24.04\nubuntu LOGIN: "))
        assert len(matches) == 1
        assert matches[0].confidence == 1.0

    def test_whitespace_is_collapsed(self):
        assert LiteralRecognizer("press  enter").recognize(_text("Press\nEnter to continue"))

    def test_no_match(self):
        assert LiteralRecognizer("login:").recognize(_text("Installing packages")) == []


class TestGlobRecognizer:
    def test_matches_within_line(self):
        matches = GlobRecognizer("install* complete").recognize(_text("foo\nInstallation complete.\n"))
        assert [m.text for m in matches] == ["Installation complete."]

    def test_does_not_span_lines(self):
        assert GlobRecognizer("install*complete").recognize(_text("install\ncomplete")) == []


class TestOcrRecognizer:
    def test_exact_match_after_ocr(self):
        recognizer = OcrRecognizer("login:", ocr=lambda data: "debian login: _")
        matches = recognizer.recognize(_image())
        assert matches[0].confidence == 1.0

    def test_fuzzy_match_above_threshold(self):
        recognizer = OcrRecognizer("Installation complete", threshold=0.8, ocr=lambda data: "Instal1ation comp1ete")
        matches = recognizer.recognize(_image())
        assert len(matches) == 1
        assert 0.8 <= matches[0].confidence < 1.0

    def test_fuzzy_match_below_threshold(self):
        recognizer = OcrRecognizer("Installation complete", threshold=0.8, ocr=lambda data: "Select a language")
        assert recognizer.recognize(_image()) == []

    def test_glob_pattern_on_ocr_text(self):
        recognizer = OcrRecognizer("*login:", ocr=lambda data: "host login:")
        assert recognizer.recognize(_image())

    def test_text_frames_skip_ocr(self):
        def _boom(data):
            raise AssertionError("OCR must not run on text frames")

        recognizer = OcrRecognizer("login", ocr=_boom)
        assert recognizer.recognize(_text("login"))


class TestTesseractText:
    def test_unreadable_image(self):
        with pytest.raises(RecognitionError, match="Unreadable"):
            tesseract_text(b"not an image")

    def test_runs_tesseract_on_grayscale(self):
        with patch("imagepuppet.recognition.pytesseract.image_to_string", return_value="hello") as ocr:
            assert tesseract_text(_image().data) == "hello"
        image = ocr.call_args[0][0]
        assert image.mode == "L"


class TestRecognizerFor:
    def test_image_frames_use_ocr(self):
        assert isinstance(recognizer_for("login", "image"), OcrRecognizer)

    def test_glob_characters_select_glob(self):
        assert isinstance(recognizer_for("log?n", "text"), GlobRecognizer)

    def test_default_is_literal(self):
        assert isinstance(recognizer_for("login", "text"), LiteralRecognizer)
