"""
Per-connection protocol state machine.

One handler serves one connection, processing requests strictly in order:

    AWAIT_COMMAND -> READING_METADATA -> READING_PAYLOAD (optional)
                  -> RESPONDING -> AWAIT_COMMAND ... -> CLOSED

A request frame (command line, metadata block, announced payload) is always
read in full before the store is touched, so a rejected request never leaves
unread payload bytes in the stream. Validation failures become a single
`ERROR <code> <REASON>` line; I/O failures become `ERROR 500 SERVER_ERROR`.
Neither closes the connection. Only end of stream, the per-request read
deadline (`read_timeout`, covering the wait for a command and its whole
frame), or a frame that can no longer be re-synchronized ends the loop.
"""

from __future__ import annotations

import logging
import os
import pathlib
import re
import typing
import uuid
from datetime import datetime
from enum import Enum, auto

from .disease import DetectionReport
from .fasta import compute_checksum, extract_sequence, is_valid_format
from .framing import FramedReader, LineTooLongError, ResponseWriter
from .patient import PatientRecord
from .settings import ServerSettings
from .signatures import DiseaseSignatureIndex
from .store import DuplicatePatientError, RecordStore

END_METADATA = "END_METADATA"
START_FASTA = "START_FASTA"

# metadata keys UPDATE_PATIENT may change, mapped to PatientRecord fields
UPDATABLE_FIELDS = {
    "full_name": "full_name",
    "age": "age",
    "sex": "sex",
    "contact_email": "contact_email",
    "clinical_notes": "clinical_notes",
}

_NUMERIC = re.compile(r"^[0-9]+$")


class HandlerState(Enum):
    AWAIT_COMMAND = auto()
    READING_METADATA = auto()
    READING_PAYLOAD = auto()
    RESPONDING = auto()
    CLOSED = auto()


class ProtocolError(Exception):
    """
    A request that must be answered with `ERROR <code> <reason>`.

    `close` is set when the stream can no longer be framed reliably after
    the error, so the connection has to end.
    """

    def __init__(self, code: int, reason: str, close: bool = False):
        super().__init__(f"{code} {reason}")
        self.code = code
        self.reason = reason
        self.close = close


class StreamEnded(EOFError):
    """The peer closed the stream in the middle of a request frame."""


class ConnectionHandler:
    def __init__(
        self,
        reader: FramedReader,
        writer: ResponseWriter,
        index: DiseaseSignatureIndex,
        store: RecordStore,
        settings: ServerSettings,
        peer: str = "-",
        logger: logging.Logger | None = None,
    ):
        self.reader = reader
        self.writer = writer
        self.index = index
        self.store = store
        self.settings = settings
        self.peer = peer
        self.log = logger or logging.getLogger(__name__)
        self.state = HandlerState.AWAIT_COMMAND

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def serve(self) -> None:
        """Process requests until the stream ends or must be abandoned."""
        self.log.info(f"[{self.peer}] Connection opened")
        try:
            while self._serve_one():
                pass
        finally:
            self.state = HandlerState.CLOSED
            self.log.info(f"[{self.peer}] Connection closed")

    def _serve_one(self) -> bool:
        """Handle one request. Returns False when the connection should end."""
        self.state = HandlerState.AWAIT_COMMAND
        # one deadline covers waiting for the command and reading its whole frame
        self.reader.set_deadline(self.settings.read_timeout)
        try:
            line = self.reader.read_line()
            if line is None:
                return False
            if not line.strip():
                return True
            self.log.info(f"[{self.peer}] Request: {line.strip()}")
            self.dispatch(line.strip())
            return True
        except ProtocolError as e:
            self.log.warning(f"[{self.peer}] Rejected with {e.code} {e.reason}")
            self.writer.send_error(e.code, e.reason)
            return not e.close
        except LineTooLongError as e:
            self.log.warning(f"[{self.peer}] {e}; closing connection")
            self._try_send_error(400, "BAD_REQUEST")
            return False
        except EOFError as e:
            self.log.warning(f"[{self.peer}] Stream ended mid-request: {e}")
            self._try_send_error(500, "SERVER_ERROR")
            return False
        except TimeoutError:
            self.log.warning(f"[{self.peer}] Read deadline expired; closing connection")
            return False
        except OSError as e:
            self.log.error(f"[{self.peer}] I/O failure while serving request: {e}")
            return self._try_send_error(500, "SERVER_ERROR")

    def _try_send_error(self, code: int, reason: str) -> bool:
        try:
            self.writer.send_error(code, reason)
            return True
        except OSError as e:
            self.log.error(f"[{self.peer}] Could not send error response: {e}")
            return False

    def dispatch(self, line: str) -> None:
        parts = line.split()
        command = parts[0]
        if command == "CREATE_PATIENT":
            self.handle_create()
        elif command == "RETRIEVE_PATIENT":
            self.handle_retrieve(self._single_id_argument(parts))
        elif command == "UPDATE_PATIENT":
            self.handle_update()
        elif command == "DELETE_PATIENT":
            self.handle_delete(self._single_id_argument(parts))
        else:
            raise ProtocolError(400, "UNKNOWN_COMMAND")

    @staticmethod
    def _single_id_argument(parts: list[str]) -> int:
        if len(parts) != 2 or not _NUMERIC.match(parts[1]):
            raise ProtocolError(400, "BAD_REQUEST")
        return int(parts[1])

    # ------------------------------------------------------------------
    # Framing
    # ------------------------------------------------------------------

    def read_metadata(self) -> dict[str, str]:
        """`key: value` lines up to END_METADATA; the last occurrence of a key wins."""
        self.state = HandlerState.READING_METADATA
        metadata: dict[str, str] = {}
        while True:
            line = self.reader.read_line()
            if line is None:
                raise StreamEnded("stream ended before END_METADATA")
            line = line.strip()
            if line == END_METADATA:
                return metadata
            if ":" not in line:
                if line:
                    self.log.warning(f"[{self.peer}] Ignoring metadata line without ':': {line!r}")
                continue
            key, value = line.split(":", 1)
            metadata[key.strip()] = value.strip()

    def read_payload(self) -> tuple[pathlib.Path, int]:
        """
        Read `START_FASTA <n>` and exactly n raw bytes into a freshly named
        file. Returns (path, n); the caller owns the file.
        """
        self.state = HandlerState.READING_PAYLOAD
        header = self.reader.read_line()
        if header is None:
            raise StreamEnded("stream ended before START_FASTA")
        parts = header.split()
        if len(parts) != 2 or parts[0] != START_FASTA or not _NUMERIC.match(parts[1]):
            raise ProtocolError(422, "INVALID_FASTA_HEADER")
        nbytes = int(parts[1])
        if nbytes > self.settings.max_payload_bytes:
            raise ProtocolError(422, "PAYLOAD_TOO_LARGE", close=True)

        fasta_dir = self.settings.fasta_dir
        fasta_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        path = fasta_dir / f"patient_{stamp}_{uuid.uuid4().hex[:12]}.fasta"
        try:
            with open(path, "wb") as fh:
                self.reader.copy_exactly(nbytes, fh)
        except BaseException:
            _discard(path)
            raise
        self.log.debug(f"[{self.peer}] Stored {nbytes} payload bytes in {path.name}")
        return path, nbytes

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_payload(self, path: pathlib.Path, claimed_checksum: str | None) -> str:
        """Format check then checksum check; returns the computed checksum."""
        if not is_valid_format(path, strict=self.settings.strict_fasta):
            raise ProtocolError(422, "INVALID_FASTA")
        checksum = compute_checksum(path)
        if claimed_checksum and claimed_checksum.strip().lower() != checksum:
            raise ProtocolError(422, "CHECKSUM_MISMATCH")
        return checksum

    @staticmethod
    def parse_age(value: str | None) -> int:
        if value is None or not _NUMERIC.match(value):
            raise ProtocolError(400, "INVALID_AGE")
        return int(value)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def handle_create(self) -> None:
        metadata = self.read_metadata()
        path, nbytes = self.read_payload()
        keep = False
        try:
            self.state = HandlerState.RESPONDING
            checksum = self.validate_payload(path, metadata.get("checksum_fasta"))

            document_id = metadata.get("document_id")
            if not document_id:
                raise ProtocolError(400, "MISSING_DOCUMENT_ID")
            if not _NUMERIC.match(document_id):
                raise ProtocolError(400, "INVALID_DOCUMENT_ID")
            age = self.parse_age(metadata.get("age"))

            try:
                record = PatientRecord(
                    patient_id=int(document_id),
                    document_id=document_id,
                    full_name=metadata.get("full_name", ""),
                    age=age,
                    sex=metadata.get("sex", ""),
                    contact_email=metadata.get("contact_email", ""),
                    registration_date=metadata.get("registration_date")
                    or datetime.now().isoformat(timespec="seconds"),
                    clinical_notes=metadata.get("clinical_notes", ""),
                    checksum_fasta=checksum,
                    file_size_bytes=nbytes,
                )
            except ValueError:
                raise ProtocolError(400, "INVALID_SEX")

            try:
                self.store.insert(record)
            except DuplicatePatientError:
                raise ProtocolError(409, "ALREADY_EXISTS")
            keep = True
            self.writer.send_line(f"201 CREATED patient_id: {record.patient_id}")
            self.log.info(f"[{self.peer}] Created patient {record.patient_id}")
        finally:
            if not keep:
                _discard(path)

        for report in self.detect(record, path):
            self.store.append_report(report)
            self.writer.send_line(f"DETECTION {report.to_row()}")

    def detect(self, record: PatientRecord, path: pathlib.Path) -> list[DetectionReport]:
        """Screen the stored sequence; one report per matching signature, in index order."""
        sequence = extract_sequence(path)
        reports = [DetectionReport.for_match(record.patient_id, s) for s in self.index.detect(sequence)]
        if reports:
            ids = ", ".join(r.disease_id for r in reports)
            self.log.info(f"[{self.peer}] Patient {record.patient_id} matched: {ids}")
        return reports

    def handle_update(self) -> None:
        metadata = self.read_metadata()
        path: pathlib.Path | None = None
        nbytes = 0
        if "file_size_bytes" in metadata:
            path, nbytes = self.read_payload()
        keep = False
        try:
            self.state = HandlerState.RESPONDING
            changes: dict[str, typing.Any] = {}
            if path is not None:
                changes["checksum_fasta"] = self.validate_payload(path, metadata.get("checksum_fasta"))
                changes["file_size_bytes"] = nbytes

            raw_id = metadata.get("patient_id")
            if not raw_id:
                raise ProtocolError(400, "MISSING_PATIENT_ID")
            if not _NUMERIC.match(raw_id):
                raise ProtocolError(400, "BAD_REQUEST")
            patient_id = int(raw_id)

            for key, field_name in UPDATABLE_FIELDS.items():
                if key in metadata:
                    changes[field_name] = metadata[key]
            if "age" in changes:
                changes["age"] = self.parse_age(changes["age"])

            def apply(current: PatientRecord) -> PatientRecord:
                try:
                    return current.with_updates(**changes)
                except ValueError:
                    raise ProtocolError(400, "INVALID_SEX")

            updated = self.store.update_active(patient_id, apply)
            if updated is None:
                raise ProtocolError(404, "NOT_FOUND")
            keep = True
        finally:
            if path is not None and not keep:
                _discard(path)
        self.writer.send_line("OK patient updated")
        self.log.info(f"[{self.peer}] Updated patient {patient_id}: {sorted(changes)}")

    def handle_retrieve(self, patient_id: int) -> None:
        self.state = HandlerState.RESPONDING
        record = self.store.find_active_by_id(patient_id)
        if record is None:
            raise ProtocolError(404, "NOT_FOUND")
        self.writer.send_lines(["OK", *record.describe()])

    def handle_delete(self, patient_id: int) -> None:
        self.state = HandlerState.RESPONDING
        if not self.store.deactivate(patient_id):
            raise ProtocolError(404, "NOT_FOUND")
        self.writer.send_line("OK patient deleted")
        self.log.info(f"[{self.peer}] Deactivated patient {patient_id}")


def _discard(path: pathlib.Path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
