"""
Command-line interface for the genoscreen service.

`serve` runs the submission server; the other commands inspect local FASTA
files, the signature library and the persisted stores, or talk to a running
server (`submit`, `retrieve`, `delete`).
"""

import logging
import pathlib
import signal
import sys
import threading
import typing

import click
from stairval.notepad import create_notepad

from .client import GenomicClient
from .fasta import compute_checksum, extract_sequence, is_valid_format
from .loader import load_store_as_tables, reports_for_patient
from .server import ConnectionAcceptor
from .settings import ServerSettings
from .signatures import load_signatures


@click.group()
def main():
    """genoscreen: patient FASTA submission and disease-signature screening."""
    pass


def _configure_logging(verbose_logging: bool, log_file_path: typing.Optional[str]) -> None:
    # configure logging
    handlers: list[logging.Handler] = []
    if log_file_path:
        handlers.append(logging.FileHandler(log_file_path, mode="a", encoding="utf-8"))
    if verbose_logging:
        handlers.append(logging.StreamHandler(sys.stderr))
    if handlers:
        logging.basicConfig(
            level=logging.DEBUG if verbose_logging else logging.INFO,
            format="%(asctime)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            handlers=handlers,
        )


def _report_issues(notepad):
    # if there were errors, show them
    if notepad.has_errors(include_subsections=True):
        click.echo("Errors found in signature library:")
        for err in notepad.errors():
            click.echo(f"- {err}")
    # show any warnings but keep going
    if notepad.has_warnings(include_subsections=True):
        click.echo("Warnings found in signature library:")
        for w in notepad.warnings():
            click.echo(f"- {w}")


@main.command(name="serve")
@click.option("--host", default=None, help="bind address (env GENOSCREEN_HOST, default 127.0.0.1)")
@click.option("-p", "--port", default=None, type=int, help="bind port (env GENOSCREEN_PORT, default 8443)")
@click.option(
    "-d",
    "--data-dir",
    default=None,
    type=click.Path(file_okay=False, path_type=pathlib.Path),
    help="where patients.csv, reports.csv and fasta/ are kept",
)
@click.option(
    "--disease-dir",
    default=None,
    type=click.Path(file_okay=False, path_type=pathlib.Path),
    help="directory of disease signature FASTA files (default <data-dir>/diseases)",
)
@click.option("--max-workers", default=None, type=click.IntRange(min=1), help="reusable handler threads (extra connections get their own thread)")
@click.option("--read-timeout", default=None, type=click.FloatRange(min=0), help="per-request read deadline in seconds, 0 disables")
@click.option("--strict-fasta/--lenient-fasta", default=None, help="reject FASTA lines with characters outside ACGTN")
@click.option("--verbose-logging", is_flag=True, help="Also emit debug logs to stderr")
@click.option(
    "--log-file-path",
    type=click.Path(dir_okay=False, writable=True),
    help="Append timestamped logs to this file",
)
def serve(
    host: typing.Optional[str],
    port: typing.Optional[int],
    data_dir: typing.Optional[pathlib.Path],
    disease_dir: typing.Optional[pathlib.Path],
    max_workers: typing.Optional[int],
    read_timeout: typing.Optional[float],
    strict_fasta: typing.Optional[bool],
    verbose_logging: bool,
    log_file_path: typing.Optional[str],
):
    """
    Load the signature library once, then accept connections until
    interrupted (Ctrl-C or SIGTERM triggers a graceful shutdown).
    """
    _configure_logging(verbose_logging, log_file_path)
    try:
        settings = ServerSettings.from_env().override(
            host=host,
            port=port,
            data_dir=data_dir,
            disease_dir=disease_dir,
            max_workers=max_workers,
            read_timeout=read_timeout,
            strict_fasta=strict_fasta,
        )
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    notepad = create_notepad("signatures")
    acceptor = ConnectionAcceptor(settings, notepad=notepad)
    _report_issues(notepad)
    bound_host, bound_port = acceptor.bind()
    click.echo(f"Loaded {len(acceptor.index)} disease signatures from {settings.disease_dir}")
    click.echo(f"Listening on {bound_host}:{bound_port}")

    def _stop(signum, frame):
        raise KeyboardInterrupt

    previous = None
    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGTERM, _stop)
    try:
        acceptor.serve_forever()
    except KeyboardInterrupt:
        click.echo("Shutting down …")
    finally:
        acceptor.shutdown()
        if previous is not None:
            signal.signal(signal.SIGTERM, previous)


@main.command(name="check-fasta")
@click.argument("fasta_paths", nargs=-1, type=click.Path(exists=True, dir_okay=False))
@click.option("--strict", is_flag=True, help="reject lines with characters outside ACGTN")
def check_fasta(fasta_paths: tuple[str, ...], strict: bool):
    """Print checksum, size, sequence length and validity of local FASTA files."""
    if not fasta_paths:
        click.echo("❌  No input files specified.", err=True)
        sys.exit(1)

    invalid = 0
    for fasta_path in fasta_paths:
        path = pathlib.Path(fasta_path)
        valid = is_valid_format(path, strict=strict)
        status = click.style("valid", fg="green") if valid else click.style("INVALID", fg="red")
        click.echo(f"{path.name}: {status}")
        click.echo(f"  sha256: {compute_checksum(path)}")
        click.echo(f"  bytes:  {path.stat().st_size}")
        if valid:
            click.echo(f"  bases:  {len(extract_sequence(path))}")
        else:
            invalid += 1
    if invalid:
        sys.exit(2)


@main.command(name="check-signatures")
@click.argument("disease_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--sequence-file", type=click.Path(exists=True, dir_okay=False), help="also screen this FASTA file")
def check_signatures(disease_dir: str, sequence_file: typing.Optional[str]):
    """Load a signature directory and list what was loaded and skipped."""
    notepad = create_notepad("signatures")
    index = load_signatures(disease_dir, notepad)
    for signature in index.all():
        click.echo(
            f"{signature.disease_id}\t{signature.name}\tseverity={signature.severity}"
            f"\tlength={len(signature.reference_sequence)}"
        )
    click.echo(f"Loaded {len(index)} disease signatures")
    _report_issues(notepad)

    if sequence_file:
        matches = index.detect(extract_sequence(sequence_file))
        click.echo(f"Matches in {pathlib.Path(sequence_file).name}: {len(matches)}")
        for signature in matches:
            click.echo(f"- {signature.disease_id} ({signature.name}, severity {signature.severity})")


@main.command(name="list-reports")
@click.option(
    "-d",
    "--data-dir",
    default="data",
    type=click.Path(exists=True, file_okay=False),
    help="directory holding patients.csv and reports.csv",
)
@click.option("--patient-id", default=None, type=str, help="only reports for this patient")
def list_reports(data_dir: str, patient_id: typing.Optional[str]):
    """Summarize stored patients and detection reports."""
    tables = load_store_as_tables(data_dir)
    patients = tables["patients"]
    reports = tables["reports"]
    if patient_id is not None:
        reports = reports_for_patient(tables, patient_id)

    active = int(patients["active"].sum()) if not patients.empty else 0
    click.echo(f"Patients: {len(patients)} rows, {active} active")
    if reports.empty:
        click.echo("No detection reports")
        return
    click.echo(f"Detection reports: {len(reports)}")
    for _, row in reports.iterrows():
        click.echo(f"{row['patient_id']}\t{row['disease_id']}\t{row['severity']}\t{row['detected_at']}\t{row['description']}")


def _exchange(host: str, port: int, send: typing.Callable[[GenomicClient], None]) -> None:
    """Open a connection, queue requests with `send`, print every response line."""
    try:
        with GenomicClient(host, port) as client:
            send(client)
            lines = client.finish()
    except OSError as e:
        click.echo(f"Error: cannot reach {host}:{port}: {e}", err=True)
        sys.exit(1)
    for line in lines:
        click.echo(line)
    if not lines or lines[0].startswith("ERROR"):
        sys.exit(2)


@main.command(name="submit")
@click.option("--host", default="127.0.0.1", help="server address")
@click.option("-p", "--port", default=8443, type=int, help="server port")
@click.option("-f", "--fasta", "fasta_path", required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("-m", "--meta", "meta_items", multiple=True, help="metadata as key=value (repeatable)")
def submit(host: str, port: int, fasta_path: str, meta_items: tuple[str, ...]):
    """Send one CREATE_PATIENT request and print the server's response."""
    metadata: dict[str, str] = {}
    for item in meta_items:
        if "=" not in item:
            raise click.BadParameter(f"{item!r} is not key=value", param_hint="--meta")
        key, value = item.split("=", 1)
        metadata[key.strip()] = value.strip()

    _exchange(host, port, lambda client: client.create_patient_from_file(metadata, fasta_path))


@main.command(name="retrieve")
@click.argument("patient_id", type=click.IntRange(min=0))
@click.option("--host", default="127.0.0.1", help="server address")
@click.option("-p", "--port", default=8443, type=int, help="server port")
def retrieve(patient_id: int, host: str, port: int):
    """Print the stored record of an active patient."""
    _exchange(host, port, lambda client: client.retrieve_patient(patient_id))


@main.command(name="delete")
@click.argument("patient_id", type=click.IntRange(min=0))
@click.option("--host", default="127.0.0.1", help="server address")
@click.option("-p", "--port", default=8443, type=int, help="server port")
def delete(patient_id: int, host: str, port: int):
    """Deactivate a patient record on the server."""
    _exchange(host, port, lambda client: client.delete_patient(patient_id))


if __name__ == "__main__":
    main()
