"""
RagChat - Text Utilities
=========================
Document loading, text cleaning and path helpers used by the
``DocumentIndexer``.  Stateless and side-effect-free apart from reading
the file being loaded.
"""

from __future__ import annotations

import re
import unicodedata
from pathlib import Path

# Control characters (C0/C1) except \n, \r, \t, plus BOM, zero-width
# characters, soft hyphens and directional marks.
_NON_PRINTABLE_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f\ufeff\u200b\u200c\u200d\u200e\u200f\u00ad\u2060\ufffe]")
_HORIZONTAL_WS_RE = re.compile(r"[^\S\n]+")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def clean_text(text: str) -> str:
    """
    Sanitise raw document text for embedding.

    Steps:
        1. Unicode NFC normalisation.
        2. Strip non-printable / zero-width characters.
        3. Collapse runs of horizontal whitespace into a single space,
           *preserving* newlines.
        4. Strip every line.
        5. Collapse 3+ consecutive newlines to 2.
    """
    text = unicodedata.normalize("NFC", text)
    text = _NON_PRINTABLE_RE.sub("", text)
    text = _HORIZONTAL_WS_RE.sub(" ", text)
    text = "\n".join(line.strip() for line in text.splitlines())
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip()


def is_hidden(path: Path) -> bool:
    return path.name.startswith(".")


def read_document_text(path: Path) -> str:
    """Read a file as text: UTF-8 first, Latin-1 as a lossless fallback."""
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return path.read_text(encoding="latin-1")


def load_document(path: Path) -> tuple[str, dict[str, str]]:
    """Return the cleaned text of *path* and its base metadata."""
    text = clean_text(read_document_text(path))
    metadata = {
        "source_file": path.name,
        "file_type": path.suffix.lower().lstrip(".") or "txt",
    }
    return text, metadata


def safe_filename(filename: str) -> str | None:
    """
    Reduce an uploaded filename to a plain basename.

    Returns ``None`` when nothing usable is left (empty, ``.`` / ``..``).
    """
    name = Path(filename.replace("\\", "/")).name.strip()
    if not name or name in {".", ".."}:
        return None
    return name
