"""
Runtime configuration.

Environment
-----------
GENOSCREEN_HOST              : bind address (default "127.0.0.1")
GENOSCREEN_PORT              : bind port, 0 for an ephemeral port (default 8443)
GENOSCREEN_DATA_DIR          : patients.csv, reports.csv and fasta/ live here (default "data")
GENOSCREEN_DISEASE_DIR       : signature directory (default "<data dir>/diseases")
GENOSCREEN_MAX_WORKERS       : reusable handler threads; extra connections get their own (default 32)
GENOSCREEN_READ_TIMEOUT      : per-request read deadline in seconds, 0 disables (default 300)
GENOSCREEN_SHUTDOWN_TIMEOUT  : seconds to wait for in-flight handlers on shutdown (default 10)
GENOSCREEN_MAX_PAYLOAD_BYTES : largest accepted START_FASTA size (default 256 MiB)
GENOSCREEN_STRICT_FASTA=1    : reject FASTA lines with characters outside ACGTN
"""

from __future__ import annotations

import dataclasses
import os
import pathlib
from dataclasses import dataclass
from typing import Mapping, Optional

_TRUE_VALUES = {"1", "true", "t", "yes", "y"}


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")
    return value


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")
    return value


@dataclass(frozen=True)
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 8443
    data_dir: pathlib.Path = pathlib.Path("data")
    disease_dir: Optional[pathlib.Path] = None
    max_workers: int = 32
    read_timeout: float = 300.0
    shutdown_timeout: float = 10.0
    max_payload_bytes: int = 256 * 1024 * 1024
    strict_fasta: bool = False

    def __post_init__(self):
        object.__setattr__(self, "data_dir", pathlib.Path(self.data_dir))
        if self.disease_dir is None:
            object.__setattr__(self, "disease_dir", self.data_dir / "diseases")
        else:
            object.__setattr__(self, "disease_dir", pathlib.Path(self.disease_dir))
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {self.max_workers}")

    @property
    def fasta_dir(self) -> pathlib.Path:
        return self.data_dir / "fasta"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ServerSettings":
        env = os.environ if env is None else env
        data_dir = pathlib.Path(env.get("GENOSCREEN_DATA_DIR") or "data")
        disease_dir = env.get("GENOSCREEN_DISEASE_DIR")
        return cls(
            host=env.get("GENOSCREEN_HOST") or "127.0.0.1",
            port=_env_int(env, "GENOSCREEN_PORT", 8443),
            data_dir=data_dir,
            disease_dir=pathlib.Path(disease_dir) if disease_dir else None,
            max_workers=_env_int(env, "GENOSCREEN_MAX_WORKERS", 32),
            read_timeout=_env_float(env, "GENOSCREEN_READ_TIMEOUT", 300.0),
            shutdown_timeout=_env_float(env, "GENOSCREEN_SHUTDOWN_TIMEOUT", 10.0),
            max_payload_bytes=_env_int(env, "GENOSCREEN_MAX_PAYLOAD_BYTES", 256 * 1024 * 1024),
            strict_fasta=(env.get("GENOSCREEN_STRICT_FASTA") or "").strip().lower() in _TRUE_VALUES,
        )

    def override(self, **changes) -> "ServerSettings":
        """Replace the given fields, ignoring those passed as None (unset CLI options)."""
        changes = {k: v for k, v in changes.items() if v is not None}
        if "data_dir" in changes and "disease_dir" not in changes and self.disease_dir == self.data_dir / "diseases":
            changes["disease_dir"] = None
        return dataclasses.replace(self, **changes)
