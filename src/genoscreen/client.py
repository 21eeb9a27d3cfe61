"""
Client for the genomic submission protocol.

Requests are queued on an open connection; `finish()` half-closes the
sending side and collects every response line until the server closes the
connection. This matches the server's sequential, per-connection processing:
responses come back in request order.

    with GenomicClient("localhost", 8443) as client:
        client.create_patient({"document_id": "42", "age": "30"}, fasta_bytes)
        client.retrieve_patient(42)
        lines = client.finish()
"""

from __future__ import annotations

import hashlib
import pathlib
import socket
import typing

from .framing import FramedReader


def encode_metadata(metadata: typing.Mapping[str, typing.Any]) -> bytes:
    lines = []
    for key, value in metadata.items():
        text = str(value)
        if "\n" in text or "\r" in text:
            raise ValueError(f"Metadata value for {key!r} must be a single line")
        lines.append(f"{key}: {text}\n")
    lines.append("END_METADATA\n")
    return "".join(lines).encode("utf-8")


def encode_payload(payload: bytes) -> bytes:
    return f"START_FASTA {len(payload)}\n".encode("utf-8") + payload


def build_create_request(
    metadata: typing.Mapping[str, typing.Any],
    fasta: bytes,
    include_checksum: bool = True,
) -> bytes:
    """
    CREATE_PATIENT frame. The checksum and size of `fasta` are filled in
    unless the caller supplied them.
    """
    meta = dict(metadata)
    if include_checksum:
        meta.setdefault("checksum_fasta", hashlib.sha256(fasta).hexdigest())
    meta.setdefault("file_size_bytes", len(fasta))
    return b"CREATE_PATIENT\n" + encode_metadata(meta) + encode_payload(fasta)


def build_update_request(
    patient_id: int,
    changes: typing.Mapping[str, typing.Any],
    fasta: bytes | None = None,
) -> bytes:
    meta: dict[str, typing.Any] = {"patient_id": patient_id, **changes}
    if fasta is None:
        meta.pop("file_size_bytes", None)
        return b"UPDATE_PATIENT\n" + encode_metadata(meta)
    meta.setdefault("checksum_fasta", hashlib.sha256(fasta).hexdigest())
    meta["file_size_bytes"] = len(fasta)
    return b"UPDATE_PATIENT\n" + encode_metadata(meta) + encode_payload(fasta)


def build_retrieve_request(patient_id: int) -> bytes:
    return f"RETRIEVE_PATIENT {patient_id}\n".encode("utf-8")


def build_delete_request(patient_id: int) -> bytes:
    return f"DELETE_PATIENT {patient_id}\n".encode("utf-8")


class GenomicClient:
    def __init__(self, host: str, port: int, timeout: float | None = 30.0):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._sock: socket.socket | None = None

    def connect(self) -> "GenomicClient":
        self._sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        return self

    def _send(self, frame: bytes) -> None:
        if self._sock is None:
            raise RuntimeError("Client is not connected")
        self._sock.sendall(frame)

    def create_patient(self, metadata: typing.Mapping[str, typing.Any], fasta: bytes) -> None:
        self._send(build_create_request(metadata, fasta))

    def create_patient_from_file(self, metadata: typing.Mapping[str, typing.Any], fasta_path) -> None:
        self.create_patient(metadata, pathlib.Path(fasta_path).read_bytes())

    def retrieve_patient(self, patient_id: int) -> None:
        self._send(build_retrieve_request(patient_id))

    def update_patient(
        self,
        patient_id: int,
        changes: typing.Mapping[str, typing.Any],
        fasta: bytes | None = None,
    ) -> None:
        self._send(build_update_request(patient_id, changes, fasta))

    def delete_patient(self, patient_id: int) -> None:
        self._send(build_delete_request(patient_id))

    def send_raw(self, frame: bytes) -> None:
        self._send(frame)

    def finish(self) -> list[str]:
        """Half-close, then read response lines until the server closes."""
        if self._sock is None:
            raise RuntimeError("Client is not connected")
        self._sock.shutdown(socket.SHUT_WR)
        reader = FramedReader.from_socket(self._sock)
        lines: list[str] = []
        while True:
            line = reader.read_line()
            if line is None:
                return lines
            lines.append(line)

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> "GenomicClient":
        return self.connect()

    def __exit__(self, *exc) -> None:
        self.close()
