"""Pytest configuration for local module imports and in-memory workbooks."""

from __future__ import annotations

import io
import sys
import zipfile
from pathlib import Path

import openpyxl
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
project_root_str = str(PROJECT_ROOT)
if project_root_str not in sys.path:
    # Ensure tests can import the flat modules without package installation.
    sys.path.insert(0, project_root_str)

CATALOG_HEADERS = [
    "VEICULO",
    "TIPO CHASSI",
    "TIPO DE VEICULO",
    "MODELO/TIPO",
    "CAPACIDADE TANQUE",
    "AMARELA",
    "VERDE",
    "DOURADA",
]

# OLE2 header of a legacy .xls followed by binary noise
LEGACY_XLS = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1" + b"A" * 200000


def build_workbook(sheets: dict[str, list[list[object]]]) -> bytes:
    """Serialize `{sheet name: rows}` into XLSX bytes, keeping sheet order."""
    workbook = openpyxl.Workbook()
    workbook.remove(workbook.active)
    for name, rows in sheets.items():
        worksheet = workbook.create_sheet(title=name)
        for row in rows:
            worksheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def make_workbook():
    return build_workbook


@pytest.fixture
def catalog_rows():
    """Prefix vehicle rows with the standard catalog header row."""

    def _rows(*vehicles: list[object]) -> list[list[object]]:
        return [CATALOG_HEADERS, *vehicles]

    return _rows


def build_word_document() -> bytes:
    """A valid zip package that holds a text document instead of a workbook."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as package:
        package.writestr(
            "[Content_Types].xml",
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
            '<Override PartName="/word/document.xml" '
            'ContentType="application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"/>'
            "</Types>",
        )
        package.writestr("word/document.xml", "<document/>")
    return buffer.getvalue()
