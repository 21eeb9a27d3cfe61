"""
Disease domain models.

Defines the DiseaseSignature dataclass loaded from the signature library and
the DetectionReport dataclass produced when a signature matches a patient.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime

from .patient import sanitize_text

_SEQUENCE_PATTERN = re.compile(r"^[ACGTN]+$")

REPORT_HEADER = "patientId,diseaseId,severity,detectedAt,description"


@dataclass(frozen=True)
class DiseaseSignature:
    """
    A disease's reference genomic subsequence.

    Attributes:
        disease_id: Identifier from the signature header (e.g. 'D001').
        name: Human-readable disease name.
        severity: Integer severity on a 1-10 scale.
        reference_sequence: Normalized sequence over {A,C,G,T,N}.
    """

    disease_id: str
    name: str
    severity: int
    reference_sequence: str

    def __post_init__(self):
        if not self.disease_id or "," in self.disease_id:
            raise ValueError(f"Invalid disease ID: {self.disease_id!r}")

        if not isinstance(self.severity, int) or not 1 <= self.severity <= 10:
            raise ValueError(f"severity must be an integer in 1..10, got {self.severity!r}")

        if not _SEQUENCE_PATTERN.match(self.reference_sequence):
            raise ValueError(f"Reference sequence for {self.disease_id!r} is empty or not normalized")


@dataclass
class DetectionReport:
    """
    One disease match for a patient, created when the patient is registered.

    Attributes:
        patient_id: Integer patient identifier.
        disease_id: Identifier of the matched DiseaseSignature.
        severity: Severity copied from the signature.
        description: Free text, sanitized before persistence.
        detected_at: Detection timestamp (defaults to now).
    """

    patient_id: int
    disease_id: str
    severity: int
    description: str
    detected_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def for_match(cls, patient_id: int, signature: DiseaseSignature) -> "DetectionReport":
        return cls(
            patient_id=patient_id,
            disease_id=signature.disease_id,
            severity=signature.severity,
            description=f"Match found with {signature.name}",
        )

    def to_row(self) -> str:
        """CSV row, also used verbatim after 'DETECTION ' on the wire."""
        return ",".join(
            [
                str(self.patient_id),
                self.disease_id,
                str(self.severity),
                self.detected_at.isoformat(timespec="seconds"),
                sanitize_text(self.description),
            ]
        )
