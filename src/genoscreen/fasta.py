"""
FASTA checksum and format helpers.

Pure functions over files and strings; no shared state.

Two validation policies exist for sequence lines:
- lenient (default): characters outside {A,C,G,T,N} are silently discarded,
  so any file whose first non-empty line starts with '>' is accepted.
- strict: any character outside {A,C,G,T,N} (after uppercasing and trimming
  surrounding whitespace) rejects the file.
"""

from __future__ import annotations

import hashlib
import pathlib
import re
import typing

# Bytes per read when hashing; independent of any text decoding
CHUNK_SIZE = 4096

_NON_SEQUENCE = re.compile(r"[^ACGTN]")
_STRICT_LINE = re.compile(r"^[ACGTN]*$")


def compute_checksum(path: typing.Union[str, pathlib.Path]) -> str:
    """Stream the file through SHA-256 and return the lowercase hex digest."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def is_valid_format(path, strict: bool = False) -> bool:
    """
    Check that the file looks like FASTA.

    The first non-empty line must start with '>'. Remaining lines are checked
    according to the policy selected by `strict` (see module docstring).
    Undecodable bytes are treated as stray characters.
    """
    with open(path, "r", encoding="utf-8", errors="replace") as fh:
        header_seen = False
        for raw in fh:
            line = raw.strip()
            if not header_seen:
                if not line:
                    continue
                if not line.startswith(">"):
                    return False
                header_seen = True
                continue
            if strict and not _STRICT_LINE.match(line.upper()):
                return False
    return header_seen


def normalize(content: str) -> str:
    """Uppercase and drop everything outside {A,C,G,T,N}."""
    if not content:
        return ""
    return _NON_SEQUENCE.sub("", content.upper())


def extract_sequence(path) -> str:
    """
    Read a FASTA file and return its normalized sequence.

    Header lines ('>' prefixed) are skipped so their text never leaks into
    the sequence used for matching.
    """
    parts: list[str] = []
    with open(path, "r", encoding="utf-8", errors="replace") as fh:
        for raw in fh:
            if raw.lstrip().startswith(">"):
                continue
            parts.append(normalize(raw))
    return "".join(parts)
