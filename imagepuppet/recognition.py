"""Frame recognition strategies for the screen detector."""

from __future__ import annotations

import fnmatch
import re
from difflib import SequenceMatcher
from io import BytesIO
from typing import Callable, List, Optional

try:
    from PIL import Image, UnidentifiedImageError  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("Pillow is required but not installed") from exc

try:
    import pytesseract  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("pytesseract is required but not installed") from exc

from imagepuppet.constants import DEFAULT_OCR_THRESHOLD
from imagepuppet.exceptions import PuppetError
from imagepuppet.models import Frame, Match

_GLOB_CHARS = re.compile(r"[*?\[]")
_WHITESPACE = re.compile(r"\s+")


class RecognitionError(PuppetError):
    """A frame could not be read. Counts as a non-matching sample."""

    component = "detector"


def _normalize(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip().lower()


class LiteralRecognizer:
    """Case-insensitive substring search over text frames."""

    def __init__(self, pattern: str) -> None:
        self.pattern = pattern
        self._needle = _normalize(pattern)

    def match_text(self, text: str) -> List[Match]:
        if self._needle and self._needle in _normalize(text):
            return [Match(text=self.pattern, confidence=1.0)]
        return []

    def recognize(self, frame: Frame) -> List[Match]:
        return self.match_text(frame.text())


class GlobRecognizer:
    """Shell-style glob matched against each line of a text frame."""

    def __init__(self, pattern: str) -> None:
        self.pattern = pattern
        self._glob = f"*{pattern.lower()}*"

    def match_text(self, text: str) -> List[Match]:
        matches = []
        for line in text.splitlines():
            if fnmatch.fnmatchcase(line.lower(), self._glob):
                matches.append(Match(text=line.strip(), confidence=1.0))
        return matches

    def recognize(self, frame: Frame) -> List[Match]:
        return self.match_text(frame.text())


def tesseract_text(data: bytes) -> str:
    """Run Tesseract over an encoded screenshot (PNG or PPM)."""
    try:
        with Image.open(BytesIO(data)) as image:
            return pytesseract.image_to_string(image.convert("L"))
    except (UnidentifiedImageError, OSError) as exc:
        raise RecognitionError(f"Unreadable screenshot: {exc}") from exc
    except pytesseract.TesseractError as exc:
        raise RecognitionError(f"Tesseract failed: {exc}") from exc


class OcrRecognizer:
    """Image frames are converted to text, then matched exactly or fuzzily.

    Fuzzy matching slides a window of as many words as the pattern over the
    recognised text and accepts the best window whose similarity reaches
    ``threshold``.
    """

    def __init__(
        self,
        pattern: str,
        threshold: float = DEFAULT_OCR_THRESHOLD,
        ocr: Optional[Callable[[bytes], str]] = None,
    ) -> None:
        self.pattern = pattern
        self.threshold = threshold
        self._ocr = ocr or tesseract_text
        self._glob = GlobRecognizer(pattern) if _GLOB_CHARS.search(pattern) else None
        self._literal = LiteralRecognizer(pattern)

    def match_text(self, text: str) -> List[Match]:
        if self._glob is not None:
            return self._glob.match_text(text)
        exact = self._literal.match_text(text)
        if exact:
            return exact
        needle = _normalize(self.pattern)
        words = _normalize(text).split(" ")
        size = max(1, len(needle.split(" ")))
        best_ratio = 0.0
        best_window = ""
        for start in range(max(1, len(words) - size + 1)):
            window = " ".join(words[start:start + size])
            ratio = SequenceMatcher(None, needle, window).ratio()
            if ratio > best_ratio:
                best_ratio, best_window = ratio, window
        if best_window and best_ratio >= self.threshold:
            return [Match(text=best_window, confidence=best_ratio)]
        return []

    def recognize(self, frame: Frame) -> List[Match]:
        if frame.kind == "text":
            return self.match_text(frame.text())
        return self.match_text(self._ocr(frame.data))


def recognizer_for(
    pattern: str,
    frame_kind: str,
    threshold: float = DEFAULT_OCR_THRESHOLD,
    ocr: Optional[Callable[[bytes], str]] = None,
):
    """Pick the strategy for a pattern and the frame kind a provider produces."""
    if frame_kind == "image":
        return OcrRecognizer(pattern, threshold=threshold, ocr=ocr)
    if _GLOB_CHARS.search(pattern):
        return GlobRecognizer(pattern)
    return LiteralRecognizer(pattern)
