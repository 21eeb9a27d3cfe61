"""
Flat-file record store.

Patients live in a header-labelled CSV, one row per record; detection
reports live in a second, append-only CSV. Rows are never physically
removed: DELETE flips the `active` column.

Every operation runs under one store-wide lock. Read-modify-write sequences
(`insert`, `update_active`, `deactivate`) hold it for the whole span, so
concurrent connections observe linearized reads and writes. Rewrites go to a
temporary file in the same directory followed by `os.replace`, so a crash
leaves either the old or the new file, never a truncated one.
"""

from __future__ import annotations

import logging
import os
import pathlib
import tempfile
import threading
import typing

from .disease import REPORT_HEADER, DetectionReport
from .patient import PATIENT_HEADER, PatientRecord


class DuplicatePatientError(RuntimeError):
    """Raised when inserting a patient ID that already has an active row."""


class RecordStore:
    def __init__(
        self,
        patients_path: typing.Union[str, pathlib.Path],
        reports_path: typing.Union[str, pathlib.Path],
    ):
        self.patients_path = pathlib.Path(patients_path)
        self.reports_path = pathlib.Path(reports_path)
        self._lock = threading.Lock()
        self._ensure_file(self.patients_path, PATIENT_HEADER)
        self._ensure_file(self.reports_path, REPORT_HEADER)

    @classmethod
    def in_directory(cls, data_dir: typing.Union[str, pathlib.Path]) -> "RecordStore":
        data_dir = pathlib.Path(data_dir)
        return cls(data_dir / "patients.csv", data_dir / "reports.csv")

    @staticmethod
    def _ensure_file(path: pathlib.Path, header: str) -> None:
        if path.exists():
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="") as fh:
            fh.write(header + "\n")

    # ------------------------------------------------------------------
    # Patients
    # ------------------------------------------------------------------

    def append(self, record: PatientRecord) -> None:
        """Append one row; existing rows are never rewritten."""
        with self._lock:
            self._append_line(self.patients_path, record.to_row())

    def insert(self, record: PatientRecord) -> None:
        """
        Append a new active record unless its ID already has an active row.
        The check and the append happen under the same lock acquisition.
        """
        with self._lock:
            if self._scan_active(record.patient_id) is not None:
                raise DuplicatePatientError(f"Patient {record.patient_id} already exists")
            self._append_line(self.patients_path, record.to_row())
        logging.info(f"Stored patient {record.patient_id}")

    def find_active_by_id(self, patient_id: int) -> PatientRecord | None:
        with self._lock:
            found = self._scan_active(patient_id)
        return found[1] if found is not None else None

    def update(self, record: PatientRecord) -> bool:
        """Replace the active row for `record.patient_id`. Returns False if there is none."""
        with self._lock:
            return self._replace_active(record.patient_id, lambda _current: record)

    def update_active(
        self,
        patient_id: int,
        mutate: typing.Callable[[PatientRecord], PatientRecord],
    ) -> PatientRecord | None:
        """
        Find the active record, pass it through `mutate` and write the result
        back, all under one lock acquisition. Returns the stored record, or
        None when no active record exists. Exceptions from `mutate` propagate
        and leave the file untouched.
        """
        result: list[PatientRecord] = []

        def apply(current: PatientRecord) -> PatientRecord:
            updated = mutate(current)
            result.append(updated)
            return updated

        with self._lock:
            if not self._replace_active(patient_id, apply):
                return None
        return result[0]

    def deactivate(self, patient_id: int) -> bool:
        """Soft delete: flip `active` on the active row. False if there is none."""
        with self._lock:
            return self._replace_active(
                patient_id, lambda current: current.with_updates(active=False)
            )

    def patients(self) -> list[PatientRecord]:
        """Every well-formed row, active or not, in file order."""
        with self._lock:
            return [record for _, record in self._iter_rows()]

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def append_report(self, report: DetectionReport) -> None:
        with self._lock:
            self._append_line(self.reports_path, report.to_row())

    def reports_for(self, patient_id: int) -> list[str]:
        """Raw report rows for one patient, in insertion order."""
        prefix = f"{patient_id},"
        with self._lock:
            return [line for _, line in self._iter_lines(self.reports_path) if line.startswith(prefix)]

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    @staticmethod
    def _append_line(path: pathlib.Path, line: str) -> None:
        with open(path, "a", encoding="utf-8", newline="") as fh:
            fh.write(line + "\n")

    @staticmethod
    def _iter_lines(path: pathlib.Path) -> typing.Iterator[tuple[int, str]]:
        """
        Yield (line_number, text) for every line after the header. Lines are
        split on b"\\n" and decoded one at a time; undecodable lines are skipped.
        """
        with open(path, "rb") as fh:
            next(fh, None)
            for line_number, raw in enumerate(fh, start=1):
                try:
                    text = raw.decode("utf-8")
                except UnicodeDecodeError as e:
                    logging.warning(f"Skipping undecodable row {line_number} in {path.name}: {e}")
                    continue
                yield line_number, text.rstrip("\r\n")

    def _iter_rows(self) -> typing.Iterator[tuple[int, PatientRecord]]:
        """Yield (line_number, record) for well-formed rows, skipping the header."""
        for line_number, line in self._iter_lines(self.patients_path):
            if not line.strip():
                continue
            try:
                record = PatientRecord.from_row(line)
            except ValueError as e:
                logging.warning(f"Skipping corrupted row {line_number} in {self.patients_path.name}: {e}")
                continue
            yield line_number, record

    def _scan_active(self, patient_id: int) -> tuple[int, PatientRecord] | None:
        # last active row wins if duplicates slipped in
        found = None
        for line_number, record in self._iter_rows():
            if record.patient_id == patient_id and record.active:
                found = (line_number, record)
        return found

    def _replace_active(
        self,
        patient_id: int,
        mutate: typing.Callable[[PatientRecord], PatientRecord],
    ) -> bool:
        found = self._scan_active(patient_id)
        if found is None:
            return False
        target_line, current = found
        replacement = mutate(current).to_row()

        # other rows are copied byte for byte, corrupted ones included
        with open(self.patients_path, "rb") as fh:
            lines = [raw.rstrip(b"\n") for raw in fh]
        lines[target_line] = replacement.encode("utf-8")
        self._atomic_write(self.patients_path, lines)
        return True

    @staticmethod
    def _atomic_write(path: pathlib.Path, lines: list[bytes]) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(b"\n".join(lines) + b"\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
