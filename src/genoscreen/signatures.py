"""
Disease signature library.

Loads one signature per FASTA file from a directory at startup:

    >D001|Influenza|5
    ACGTACGT
    ACGT...

Malformed files are skipped and reported on the notepad (and the log); they
never abort startup. The index is read-only once built, so concurrent
handlers may share it without locking.
"""

from __future__ import annotations

import logging
import pathlib
import typing

from stairval.notepad import Notepad, create_notepad

from .disease import DiseaseSignature
from .fasta import normalize
from .matcher import SignatureMatcher

SIGNATURE_SUFFIXES = {".fasta", ".fa", ".fna"}


class DiseaseSignatureIndex:
    """Immutable, load-ordered collection of disease signatures."""

    def __init__(self, signatures: typing.Sequence[DiseaseSignature] = ()):
        self._signatures: tuple[DiseaseSignature, ...] = tuple(signatures)
        self._by_id = {s.disease_id: s for s in self._signatures}
        if len(self._by_id) != len(self._signatures):
            raise ValueError("Duplicate disease IDs in signature index")
        self._matcher = SignatureMatcher(
            (s.disease_id, s.reference_sequence) for s in self._signatures
        )

    def __len__(self) -> int:
        return len(self._signatures)

    def all(self) -> tuple[DiseaseSignature, ...]:
        return self._signatures

    def find_by_id(self, disease_id: str) -> DiseaseSignature | None:
        return self._by_id.get(disease_id)

    def detect(self, sequence: str) -> list[DiseaseSignature]:
        """
        Signatures whose reference sequence occurs in `sequence`, in load order.
        `sequence` is normalized first, so callers may pass raw text.
        """
        hits = self._matcher.find(normalize(sequence))
        return [s for s in self._signatures if s.disease_id in hits]


def parse_signature_file(path: pathlib.Path) -> DiseaseSignature:
    """
    Parse a single signature file; raises ValueError describing the defect.
    """
    with open(path, "r", encoding="utf-8", errors="replace") as fh:
        header = fh.readline().strip()
        if not header.startswith(">"):
            raise ValueError("first line does not start with '>'")

        parts = header[1:].split("|")
        if len(parts) < 3:
            raise ValueError(f"header {header!r} is not 'diseaseId|name|severity'")
        disease_id, name, severity_text = (p.strip() for p in parts[:3])
        try:
            severity = int(severity_text)
        except ValueError:
            raise ValueError(f"severity {severity_text!r} is not an integer")

        sequence = normalize("".join(line.strip() for line in fh))

    return DiseaseSignature(
        disease_id=disease_id,
        name=name,
        severity=severity,
        reference_sequence=sequence,
    )


def load_signatures(
    directory: typing.Union[str, pathlib.Path],
    notepad: Notepad | None = None,
) -> DiseaseSignatureIndex:
    """
    Build the index from every signature file in `directory`, sorted by
    filename so that iteration order is reproducible.
    """
    if notepad is None:
        notepad = create_notepad("signatures")
    folder = pathlib.Path(directory)
    if not folder.is_dir():
        msg = f"Signature directory {str(folder)!r} does not exist"
        logging.warning(msg)
        notepad.add_warning(msg)
        return DiseaseSignatureIndex()

    loaded: list[DiseaseSignature] = []
    seen: set[str] = set()
    for path in sorted(folder.iterdir()):
        if not path.is_file() or path.suffix.lower() not in SIGNATURE_SUFFIXES:
            continue
        try:
            signature = parse_signature_file(path)
        except (OSError, ValueError) as e:
            msg = f"Skipping signature file {path.name!r}: {e}"
            logging.warning(msg)
            notepad.add_warning(msg)
            continue
        if signature.disease_id in seen:
            msg = f"Skipping signature file {path.name!r}: duplicate disease ID {signature.disease_id!r}"
            logging.warning(msg)
            notepad.add_warning(msg)
            continue
        seen.add(signature.disease_id)
        loaded.append(signature)
        logging.debug(f"Loaded disease {signature.disease_id} ({signature.name})")

    logging.info(f"Loaded {len(loaded)} disease signatures from {folder}")
    return DiseaseSignatureIndex(loaded)
