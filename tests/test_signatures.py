import pytest
from stairval.notepad import create_notepad

from genoscreen.disease import DiseaseSignature
from genoscreen.signatures import DiseaseSignatureIndex, load_signatures, parse_signature_file


def test_index_loads_in_filename_order(index):
    assert [s.disease_id for s in index.all()] == ["D001", "D002", "D003"]
    assert len(index) == 3


def test_reference_sequences_are_concatenated_and_normalized(index):
    assert index.find_by_id("D002").reference_sequence == "GGGTTTCCCAAATTT"
    assert index.find_by_id("D003").reference_sequence == "NNACGTT"
    assert index.find_by_id("D002").name == "Sickle Cell"
    assert index.find_by_id("D002").severity == 8


def test_find_by_id_unknown(index):
    assert index.find_by_id("NOPE") is None


def test_detect_returns_load_order(index):
    hits = index.detect("ggg tttcccaaattt xx acgtacgt")
    assert [s.disease_id for s in hits] == ["D001", "D002"]


def test_detect_exact_substring_only(index):
    assert index.detect("ACGTACG") == []
    assert index.detect("") == []


def test_malformed_files_are_skipped_with_warnings(fpath_test_dir):
    notepad = create_notepad("signatures")
    index = load_signatures(f"{fpath_test_dir}/malformed", notepad)

    assert [s.disease_id for s in index.all()] == ["D009"]
    assert index.find_by_id("D009").name == "Good"
    assert notepad.has_warnings()
    assert not notepad.has_errors()
    assert len(list(notepad.warnings())) == 6


def test_missing_directory_yields_empty_index(tmp_path):
    notepad = create_notepad("signatures")
    index = load_signatures(tmp_path / "absent", notepad)
    assert len(index) == 0
    assert notepad.has_warnings()


def test_parse_signature_file_rejects_bad_header(tmp_path):
    path = tmp_path / "x.fasta"
    path.write_text("D1|Flu|5\nACGT\n")
    with pytest.raises(ValueError):
        parse_signature_file(path)


def test_duplicate_ids_rejected_by_index():
    sig = DiseaseSignature("D1", "Flu", 5, "ACGT")
    with pytest.raises(ValueError):
        DiseaseSignatureIndex([sig, sig])


@pytest.mark.parametrize("severity", [0, 11, "5"])
def test_signature_severity_range(severity):
    with pytest.raises(ValueError):
        DiseaseSignature("D1", "Flu", severity, "ACGT")
