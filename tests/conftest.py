import io
import os
import pathlib

import pytest

from genoscreen.framing import FramedReader, ResponseWriter
from genoscreen.handler import ConnectionHandler
from genoscreen.settings import ServerSettings
from genoscreen.signatures import DiseaseSignatureIndex, load_signatures
from genoscreen.store import RecordStore


@pytest.fixture(scope="session")
def fpath_test_dir() -> str:
    """
    Path to `tests/data/` folder.
    """
    return os.path.join(os.path.dirname(__file__), "data")


@pytest.fixture(scope="session")
def fpath_diseases(fpath_test_dir: str) -> str:
    return os.path.join(fpath_test_dir, "diseases")


@pytest.fixture(scope="session")
def index(fpath_diseases: str) -> DiseaseSignatureIndex:
    """
    Signature library with D001 (ACGTACGT), D002 (GGGTTTCCCAAATTT) and D003 (NNACGTT).
    """
    return load_signatures(fpath_diseases)


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> ServerSettings:
    return ServerSettings(port=0, data_dir=tmp_path / "data", read_timeout=5.0)


@pytest.fixture
def store(settings: ServerSettings) -> RecordStore:
    return RecordStore.in_directory(settings.data_dir)


@pytest.fixture
def run_session(index, store, settings):
    """
    Feed raw request bytes through a ConnectionHandler over in-memory streams
    and return the response lines.
    """

    def _run(request: bytes, **overrides) -> list[str]:
        out = io.BytesIO()
        handler = ConnectionHandler(
            FramedReader.from_stream(io.BytesIO(request)),
            ResponseWriter.from_stream(out),
            overrides.get("index", index),
            store,
            overrides.get("settings", settings),
        )
        handler.serve()
        return out.getvalue().decode("utf-8").splitlines()

    return _run
