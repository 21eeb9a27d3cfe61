"""
Patient domain model.

Defines the PatientRecord class persisted by the record store, with
validation of each attribute and conversion to/from one CSV row.
"""

import dataclasses
import re
from dataclasses import dataclass

PATIENT_COLUMNS = (
    "patientID",
    "fullName",
    "documentID",
    "age",
    "sex",
    "contactEmail",
    "registrationDate",
    "clinicalNotes",
    "checksumFasta",
    "fileSizeBytes",
    "active",
)
PATIENT_HEADER = ",".join(PATIENT_COLUMNS)

_NUMERIC_ID = re.compile(r"^[0-9]+$")
_HEX_SHA256 = re.compile(r"^[0-9a-f]{64}$")
_ALLOWED_SEXES = {"M", "F"}


def sanitize_text(value) -> str:
    """Commas become semicolons and line breaks become spaces (lossy, deterministic)."""
    if value is None:
        return ""
    return str(value).replace(",", ";").replace("\r", " ").replace("\n", " ").strip()


def normalize_sex(value) -> str:
    """Uppercase M/F; empty stays empty. Anything else raises ValueError."""
    sex = (value or "").strip().upper()
    if sex and sex not in _ALLOWED_SEXES:
        raise ValueError(f"Invalid sex: {value!r}")
    return sex


@dataclass
class PatientRecord:
    """
    A registered patient and the fingerprint of their submitted FASTA file.

    Attributes:
        patient_id: Numeric identifier supplied by the client (unique among active rows).
        document_id: Identity document number, numeric string.
        full_name: Patient name.
        age: Non-negative integer.
        sex: 'M', 'F', or '' when not supplied.
        contact_email: Contact address (not format-checked).
        registration_date: Timestamp string of the registration.
        clinical_notes: Free text.
        checksum_fasta: Lowercase hex SHA-256 of the stored FASTA file.
        file_size_bytes: Size of the stored FASTA file.
        active: False once the record is soft-deleted.
    """

    patient_id: int
    document_id: str
    full_name: str
    age: int
    sex: str
    contact_email: str
    registration_date: str
    clinical_notes: str
    checksum_fasta: str
    file_size_bytes: int
    active: bool = True

    def __post_init__(self):
        if not isinstance(self.patient_id, int) or self.patient_id < 0:
            raise ValueError(f"Invalid patient ID: {self.patient_id!r}")

        if not _NUMERIC_ID.match(str(self.document_id)):
            raise ValueError(f"Invalid document ID: {self.document_id!r}")

        if not isinstance(self.age, int) or self.age < 0:
            raise ValueError(f"age must be a non-negative integer, got {self.age!r}")

        self.sex = normalize_sex(self.sex)

        if not _HEX_SHA256.match(self.checksum_fasta):
            raise ValueError(f"Invalid FASTA checksum: {self.checksum_fasta!r}")

        if not isinstance(self.file_size_bytes, int) or self.file_size_bytes < 0:
            raise ValueError(f"file_size_bytes must be a non-negative integer, got {self.file_size_bytes!r}")

        for attr in ("full_name", "contact_email", "registration_date", "clinical_notes"):
            setattr(self, attr, sanitize_text(getattr(self, attr)))

    def with_updates(self, **changes) -> "PatientRecord":
        """Copy with the given fields replaced; validation runs again."""
        return dataclasses.replace(self, **changes)

    def to_row(self) -> str:
        return ",".join(
            [
                str(self.patient_id),
                self.full_name,
                str(self.document_id),
                str(self.age),
                self.sex,
                self.contact_email,
                self.registration_date,
                self.clinical_notes,
                self.checksum_fasta,
                str(self.file_size_bytes),
                "true" if self.active else "false",
            ]
        )

    @classmethod
    def from_row(cls, line: str) -> "PatientRecord":
        """
        Parse one CSV row. Raises ValueError for short, long or corrupted rows
        so that scanners can skip them.
        """
        parts = line.rstrip("\r\n").split(",")
        if len(parts) != len(PATIENT_COLUMNS):
            raise ValueError(f"Expected {len(PATIENT_COLUMNS)} fields, got {len(parts)}")
        if parts[10] not in ("true", "false"):
            raise ValueError(f"Invalid active flag: {parts[10]!r}")
        return cls(
            patient_id=int(parts[0]),
            full_name=parts[1],
            document_id=parts[2],
            age=int(parts[3]),
            sex=parts[4],
            contact_email=parts[5],
            registration_date=parts[6],
            clinical_notes=parts[7],
            checksum_fasta=parts[8],
            file_size_bytes=int(parts[9]),
            active=parts[10] == "true",
        )

    def describe(self) -> list[str]:
        """`<column>: <value>` lines in header order, for RETRIEVE responses."""
        values = self.to_row().split(",")
        return [f"{column}: {value}" for column, value in zip(PATIENT_COLUMNS, values)]
