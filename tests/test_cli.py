import hashlib
import os
import shutil
from unittest.mock import MagicMock, patch

from click.testing import CliRunner
from stairval.notepad import create_notepad

from genoscreen.__main__ import _report_issues, main
from genoscreen.client import build_create_request


def test_check_fasta_reports_checksum(fpath_test_dir):
    path = os.path.join(fpath_test_dir, "patient_sample.fasta")
    with open(path, "rb") as fh:
        digest = hashlib.sha256(fh.read()).hexdigest()

    result = CliRunner().invoke(main, ["check-fasta", path])
    assert result.exit_code == 0, result.output
    assert digest in result.output
    assert "bases:  27" in result.output


def test_check_fasta_flags_invalid_file(fpath_test_dir):
    result = CliRunner().invoke(main, ["check-fasta", os.path.join(fpath_test_dir, "no_header.fasta")])
    assert result.exit_code == 2
    assert "INVALID" in result.output


def test_check_fasta_without_files():
    result = CliRunner().invoke(main, ["check-fasta"])
    assert result.exit_code == 1


def test_check_signatures_lists_and_screens(fpath_test_dir):
    result = CliRunner().invoke(
        main,
        [
            "check-signatures",
            os.path.join(fpath_test_dir, "diseases"),
            "--sequence-file",
            os.path.join(fpath_test_dir, "patient_sample.fasta"),
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Loaded 3 disease signatures" in result.output
    assert "Matches in patient_sample.fasta: 2" in result.output
    assert "- D002 (Sickle Cell, severity 8)" in result.output


def test_check_signatures_reports_skipped_files(fpath_test_dir):
    result = CliRunner().invoke(main, ["check-signatures", os.path.join(fpath_test_dir, "malformed")])
    assert result.exit_code == 0, result.output
    assert "Loaded 1 disease signatures" in result.output
    assert "Warnings found in signature library" in result.output


def test_report_issues_outputs_both_blocks(capsys):
    n = create_notepad("report")
    n.add_warning("warn 1")
    n.add_error("err 1")

    _report_issues(n)
    out = capsys.readouterr().out
    assert "Warnings found in signature library" in out
    assert "warn 1" in out
    assert "Errors found in signature library" in out
    assert "err 1" in out


def test_list_reports(run_session, store):
    fasta = b">p\nACGTACGT\n"
    run_session(build_create_request({"document_id": "5", "age": "20"}, fasta))
    run_session(build_create_request({"document_id": "6", "age": "21"}, b">p\nCCCC\n"))

    result = CliRunner().invoke(main, ["list-reports", "-d", str(store.patients_path.parent)])
    assert result.exit_code == 0, result.output
    assert "Patients: 2 rows, 2 active" in result.output
    assert "Detection reports: 1" in result.output

    result = CliRunner().invoke(main, ["list-reports", "-d", str(store.patients_path.parent), "--patient-id", "6"])
    assert "No detection reports" in result.output


def test_submit_prints_responses(fpath_test_dir):
    fake = MagicMock()
    fake.__enter__.return_value = fake
    fake.finish.return_value = ["201 CREATED patient_id: 9"]

    with patch("genoscreen.__main__.GenomicClient", return_value=fake) as client_cls:
        result = CliRunner().invoke(
            main,
            [
                "submit",
                "-p",
                "9999",
                "-f",
                os.path.join(fpath_test_dir, "patient_sample.fasta"),
                "-m",
                "document_id=9",
                "-m",
                "age=3",
            ],
        )
    assert result.exit_code == 0, result.output
    assert "201 CREATED patient_id: 9" in result.output
    client_cls.assert_called_once_with("127.0.0.1", 9999)
    metadata = fake.create_patient_from_file.call_args[0][0]
    assert metadata == {"document_id": "9", "age": "3"}


def test_submit_rejects_bad_meta(fpath_test_dir):
    result = CliRunner().invoke(
        main, ["submit", "-f", os.path.join(fpath_test_dir, "patient_sample.fasta"), "-m", "novalue"]
    )
    assert result.exit_code != 0


def fake_client(lines):
    fake = MagicMock()
    fake.__enter__.return_value = fake
    fake.finish.return_value = lines
    return fake


def test_retrieve_prints_record():
    fake = fake_client(["OK", "patientID: 5", "age: 30"])
    with patch("genoscreen.__main__.GenomicClient", return_value=fake) as client_cls:
        result = CliRunner().invoke(main, ["retrieve", "5", "--host", "10.0.0.2", "-p", "9000"])
    assert result.exit_code == 0, result.output
    assert result.output.splitlines() == ["OK", "patientID: 5", "age: 30"]
    client_cls.assert_called_once_with("10.0.0.2", 9000)
    fake.retrieve_patient.assert_called_once_with(5)


def test_retrieve_unknown_patient_exits_with_error():
    with patch("genoscreen.__main__.GenomicClient", return_value=fake_client(["ERROR 404 NOT_FOUND"])):
        result = CliRunner().invoke(main, ["retrieve", "5"])
    assert result.exit_code == 2
    assert "ERROR 404 NOT_FOUND" in result.output


def test_delete_sends_request():
    fake = fake_client(["OK patient deleted"])
    with patch("genoscreen.__main__.GenomicClient", return_value=fake):
        result = CliRunner().invoke(main, ["delete", "12"])
    assert result.exit_code == 0, result.output
    fake.delete_patient.assert_called_once_with(12)


def test_retrieve_rejects_non_numeric_id():
    result = CliRunner().invoke(main, ["retrieve", "abc"])
    assert result.exit_code != 0


def test_unreachable_server():
    with patch("genoscreen.__main__.GenomicClient", side_effect=ConnectionRefusedError("refused")):
        result = CliRunner().invoke(main, ["retrieve", "1", "-p", "1"])
    assert result.exit_code == 1
    assert "cannot reach 127.0.0.1:1" in result.output


def test_serve_reports_bad_environment(monkeypatch):
    monkeypatch.setenv("GENOSCREEN_PORT", "eighty")
    result = CliRunner().invoke(main, ["serve"])
    assert result.exit_code == 1
    assert "GENOSCREEN_PORT" in result.output


def test_serve_starts_and_stops(tmp_path, fpath_test_dir, monkeypatch):
    shutil.copytree(os.path.join(fpath_test_dir, "diseases"), tmp_path / "diseases")

    def interrupt(self):
        raise KeyboardInterrupt

    monkeypatch.setattr("genoscreen.server.ConnectionAcceptor.serve_forever", interrupt)
    result = CliRunner().invoke(main, ["serve", "--port", "0", "--data-dir", str(tmp_path)])
    assert result.exit_code == 0, result.output
    assert "Loaded 3 disease signatures" in result.output
    assert "Shutting down" in result.output
    assert (tmp_path / "patients.csv").exists()
