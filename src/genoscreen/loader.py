import pathlib

import pandas as pd

# Persisted CSV headers → snake_case column names used by the CLI tables
RENAME_MAP = {
    # patient columns
    "patientid": "patient_id",
    "fullname": "full_name",
    "documentid": "document_id",
    "contactemail": "contact_email",
    "registrationdate": "registration_date",
    "clinicalnotes": "clinical_notes",
    "checksumfasta": "checksum_fasta",
    "filesizebytes": "file_size_bytes",
    # report columns
    "diseaseid": "disease_id",
    "detectedat": "detected_at",
}

STORE_FILES = {"patients": "patients.csv", "reports": "reports.csv"}


def _read_store_csv(path: pathlib.Path, expected_fields: int) -> pd.DataFrame:
    """
    Read one store file. Rows with the wrong number of fields are dropped
    the same way the record store skips them.
    """
    df = pd.read_csv(
        path,
        header=0,
        dtype=str,
        keep_default_na=False,
        on_bad_lines="skip",
        engine="python",
        encoding="utf-8",
        encoding_errors="replace",
    )
    df = df.dropna(how="any")
    if len(df.columns) != expected_fields:
        raise ValueError(f"{path.name}: expected {expected_fields} columns, found {len(df.columns)}")

    # CLEAN & NORMALIZE headers:
    df.columns = df.columns.str.strip().str.replace(r"\s+", "", regex=True).str.lower()
    return df.rename(columns={orig: target for orig, target in RENAME_MAP.items() if orig in df.columns})


def load_store_as_tables(data_dir) -> dict[str, pd.DataFrame]:
    """
    Read the patient and report stores into DataFrames:
      - first row = header
      - every value kept as a string (ids may carry leading zeros)
      - headers normalized to snake_case
      - numeric and boolean columns converted where present
    Missing store files yield empty tables.
    """
    data_dir = pathlib.Path(data_dir)
    tables: dict[str, pd.DataFrame] = {}
    for name, filename in STORE_FILES.items():
        path = data_dir / filename
        expected = 11 if name == "patients" else 5
        if not path.is_file():
            tables[name] = pd.DataFrame()
            continue
        df = _read_store_csv(path, expected)
        if name == "patients":
            df["age"] = pd.to_numeric(df["age"], errors="coerce")
            df["file_size_bytes"] = pd.to_numeric(df["file_size_bytes"], errors="coerce")
            df["active"] = df["active"].str.strip().str.lower() == "true"
        else:
            df["severity"] = pd.to_numeric(df["severity"], errors="coerce")
        tables[name] = df
    return tables


def reports_for_patient(tables: dict[str, pd.DataFrame], patient_id: str) -> pd.DataFrame:
    reports = tables.get("reports")
    if reports is None or reports.empty:
        return pd.DataFrame()
    return reports[reports["patient_id"] == str(patient_id)]
