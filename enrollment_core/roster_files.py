"""Read uploaded roster spreadsheets into import rows."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List

import pandas as pd

_ENCODINGS = ("utf-8", "utf-8-sig", "latin-1")

_COLUMN_ALIASES = {
    "name": {"name", "nome", "aluno"},
    "tax_id": {"tax_id", "taxid", "cpf"},
    "school": {"school", "escola"},
    "class_name": {"class", "class_name", "turma"},
}


def _read_csv(path: Path) -> pd.DataFrame:
    last_error: Exception | None = None
    for encoding in _ENCODINGS:
        try:
            return pd.read_csv(path, dtype=str, encoding=encoding, keep_default_na=False)
        except UnicodeDecodeError as exc:
            last_error = exc
    raise ValueError(f"Unable to read {path} with any supported encoding") from last_error


def _column_mapping(columns: List[str]) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    for column in columns:
        key = column.strip().lower()
        for field_name, aliases in _COLUMN_ALIASES.items():
            if key in aliases and field_name not in mapping:
                mapping[field_name] = column
    return mapping


def load_roster_file(path: Path) -> List[Dict[str, str]]:
    """Return one mapping per spreadsheet row, keyed by the importer's field names.

    Missing optional columns become empty strings; a file without a name or a
    school column is rejected outright.
    """
    frame = _read_csv(path)
    mapping = _column_mapping([str(column) for column in frame.columns])
    missing = [name for name in ("name", "school") if name not in mapping]
    if missing:
        raise ValueError(f"Missing required columns: {', '.join(missing)}")

    rows: List[Dict[str, str]] = []
    for record in frame.fillna("").to_dict(orient="records"):
        row: Dict[str, str] = {}
        for field_name in _COLUMN_ALIASES:
            column = mapping.get(field_name)
            row[field_name] = str(record.get(column, "")).strip() if column else ""
        rows.append(row)
    return rows


__all__ = ["load_roster_file"]
