from __future__ import annotations

import csv
import io
import re

import pandas as pd

_SEP_RE = re.compile(r"\t|,")


def read_excel_bytes(content: bytes) -> pd.DataFrame:
    """Read .xlsx bytes into a DataFrame of strings, without a header row.

    v1: reads first sheet.
    """
    bio = io.BytesIO(content)
    df = pd.read_excel(bio, header=None, dtype=str)
    return df.fillna("")


def read_pasted_text(text: str) -> pd.DataFrame:
    """Parse rows pasted from a spreadsheet (tab separated) or CSV into strings."""
    body = str(text or "").strip()
    if not body:
        return pd.DataFrame()
    # Pasted rows are ragged; size the frame to the widest one.
    width = max(len(_SEP_RE.split(line)) for line in body.splitlines())
    df = pd.read_csv(
        io.StringIO(body),
        sep=_SEP_RE.pattern,
        engine="python",
        header=None,
        names=list(range(width)),
        dtype=str,
        skip_blank_lines=True,
        quoting=csv.QUOTE_NONE,
    )
    return df.fillna("")


def read_table_bytes(content: bytes, *, filename: str = "") -> pd.DataFrame:
    """Dispatch on file extension: Excel workbooks or delimited text."""
    name = str(filename or "").lower()
    if name.endswith((".xlsx", ".xlsm", ".xls")):
        return read_excel_bytes(content)
    text = content.decode("utf-8-sig", errors="replace")
    return read_pasted_text(text)


def clean_cell(value) -> str:
    """Cell text without a leading "label:" prefix (ASCII or full-width colon)."""
    if value is None:
        return ""
    try:
        if isinstance(value, float) and pd.isna(value):
            return ""
    except Exception:
        pass
    s = str(value).replace("\u00a0", " ").strip()
    if s.lower() == "nan":
        return ""
    s = re.sub(r"^.*[：:]\s*", "", s)
    return s.strip()


def coerce_float(value) -> float | None:
    """Coerce spreadsheet numeric representations to float.

    Returns None when value is empty/NaN. Thousands separators and unit
    suffixes ("1,250", "Z180", "0.8mm") are stripped.
    """
    if value is None:
        return None
    try:
        if isinstance(value, float) and pd.isna(value):
            return None
    except Exception:
        pass

    if isinstance(value, (int, float)):
        return float(value)

    s = clean_cell(value)
    if not s:
        return None
    s = s.replace(",", "")
    s = re.sub(r"[^\d.\-]", "", s)
    if not s:
        return None
    try:
        return float(s)
    except ValueError:
        return None

