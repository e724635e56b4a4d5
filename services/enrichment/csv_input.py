"""
CSV input - turn a company list export into CompanyRecords.

Column names are matched case-insensitively against COLUMN_ALIASES, so both
English and Italian headers work (ragione_sociale, citta, partita_iva...).
"""

import csv
import io
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from lib.resolution.errors import ValidationError
from lib.resolution.models import CompanyRecord

# CompanyRecord field -> accepted header names
COLUMN_ALIASES: Dict[str, Tuple[str, ...]] = {
    "name": ("name", "ragione_sociale", "ragione sociale", "company", "denominazione"),
    "address": ("address", "indirizzo"),
    "city": ("city", "citta", "città", "comune"),
    "province": ("province", "provincia", "prov"),
    "phone": ("phone", "telefono", "tel"),
    "tax_id": ("tax_id", "piva", "p.iva", "partita_iva", "partita iva", "vat"),
    "website": ("website", "sito", "sito_web", "url"),
    "category": ("category", "categoria", "settore"),
}


def _decode(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def _delimiter(text: str) -> str:
    """Italian exports are often ';'-separated."""
    header = text.split("\n", 1)[0]
    return ";" if header.count(";") > header.count(",") else ","


def map_columns(headers: List[str]) -> Dict[str, str]:
    """Header -> CompanyRecord field for the headers we recognise."""
    mapping = {}
    for header in headers:
        key = (header or "").strip().lower()
        for field, aliases in COLUMN_ALIASES.items():
            if key in aliases and field not in mapping.values():
                mapping[header] = field
                break
    return mapping


def row_to_record(row: Dict[str, str], mapping: Dict[str, str]) -> Optional[CompanyRecord]:
    data = {}
    for header, field in mapping.items():
        value = (row.get(header) or "").strip()
        if value:
            data[field] = value
    if not data.get("name"):
        return None
    try:
        return CompanyRecord(**data)
    except PydanticValidationError as e:
        logger.debug(f"[csv] invalid row {data.get('name')!r}: {e}")
        return None


def parse_records(text: str, limit: Optional[int] = None) -> Tuple[List[CompanyRecord], int]:
    """Parse CSV text. Returns (records, skipped_rows).

    Raises ValidationError when no column maps to a company name.
    """
    reader = csv.DictReader(io.StringIO(text), delimiter=_delimiter(text))
    mapping = map_columns(reader.fieldnames or [])
    if "name" not in mapping.values():
        raise ValidationError(
            f"CSV has no name column (expected one of: {', '.join(COLUMN_ALIASES['name'])})",
            context={"headers": ",".join(reader.fieldnames or [])},
        )

    records: List[CompanyRecord] = []
    skipped = 0
    for row in reader:
        record = row_to_record(row, mapping)
        if record is None:
            skipped += 1
            continue
        records.append(record)
        if limit and len(records) >= limit:
            break
    return records, skipped


def read_records(path: Path, limit: Optional[int] = None) -> Tuple[List[CompanyRecord], int]:
    records, skipped = parse_records(_decode(Path(path).read_bytes()), limit=limit)
    logger.info(f"[csv] {path}: {len(records)} records, {skipped} rows skipped")
    return records, skipped
