"""
JSON format parser for bulk user imports.

Accepts a JSON array of flat objects (as returned by HR APIs), converts it
to CSV text and delegates to the CSV parser, so both formats share the
same column mapping, limits and row numbering.
"""

import csv
import io
import json
import logging
from typing import Any, Dict, List, Optional, Union

from ...engine.policy import ImportPolicy
from .base import ParseResult, RecordParser
from .csv_loader import CSVRecordParser

logger = logging.getLogger(__name__)


def json_array_to_csv(payload: List[Dict[str, Any]]) -> bytes:
    """
    Convert a list of flat objects into CSV bytes.

    The header is the union of keys in first-seen order; missing and null
    values become empty cells.
    """
    if not isinstance(payload, list) or not all(isinstance(item, dict) for item in payload):
        raise ValueError("Expected a JSON array of objects")

    fieldnames: List[str] = []
    for item in payload:
        for key in item:
            if key not in fieldnames:
                fieldnames.append(key)

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=fieldnames, lineterminator="\n")
    writer.writeheader()
    for item in payload:
        writer.writerow({k: "" if v is None else v for k, v in item.items()})
    return buffer.getvalue().encode("utf-8")


class JSONRecordParser(RecordParser):
    """Parser for JSON arrays of user objects."""

    def __init__(self, policy: Optional[ImportPolicy] = None):
        self.csv_parser = CSVRecordParser(policy)

    def can_parse(self, data: Any) -> bool:
        if isinstance(data, list):
            return True
        if isinstance(data, bytes):
            data = data[:64].decode("utf-8", errors="ignore")
        if isinstance(data, str):
            return data.lstrip("\ufeff").lstrip().startswith("[")
        return False

    def parse(self, data: Union[bytes, str, List[Dict[str, Any]]]) -> ParseResult:
        if isinstance(data, (bytes, str)):
            if len(data) > self.csv_parser.policy.max_file_bytes:
                return ParseResult.failed(["File size exceeds the maximum allowed size"])
            try:
                data = json.loads(data)
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                return ParseResult.failed([f"Invalid JSON: {e}"])

        try:
            csv_bytes = json_array_to_csv(data)
        except ValueError as e:
            return ParseResult.failed([str(e)])

        logger.info(f"Converted JSON array of {len(data)} objects to CSV")
        return self.csv_parser.parse(csv_bytes)

    def iter_records(self, text, header):
        return self.csv_parser.iter_records(text, header)
