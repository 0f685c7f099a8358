"""
CSV format parser for bulk user imports.

Parses CSV files exported from HR or payroll systems into CandidateRecord
objects. Column headers are mapped onto directory fields through the alias
table of the import policy, so differently named exports load unchanged.
"""

import csv
import io
import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from ...engine.policy import ImportPolicy
from ...models import IDENTITY_FIELDS, REQUIRED_FIELDS, CandidateRecord, FieldName
from .base import ParseResult, RecordParser

logger = logging.getLogger(__name__)


class CSVRecordParser(RecordParser):
    """Parser for CSV user files."""

    def __init__(self, policy: Optional[ImportPolicy] = None):
        """
        Initialize the CSV parser.

        Args:
            policy: Import policy supplying column aliases and file limits
        """
        self.policy = policy or ImportPolicy()

    def can_parse(self, data: Any) -> bool:
        """Check if data looks like CSV content."""
        if isinstance(data, bytes):
            head = data[:64].lstrip(b"\xef\xbb\xbf").lstrip()
            return bool(head) and not head.startswith((b"[", b"{"))
        if isinstance(data, str):
            stripped = data.lstrip("\ufeff").lstrip()
            return bool(stripped) and not stripped.startswith(("[", "{"))
        return False

    def parse(self, data: Union[bytes, str]) -> ParseResult:
        """
        Check a CSV buffer and return a restartable record sequence.

        Global errors (size, encoding, empty file, missing columns, row
        limit) abort the parse; ragged rows are reported on the row.
        """
        if isinstance(data, str):
            data = data.encode("utf-8")

        max_bytes = self.policy.max_file_bytes
        if len(data) > max_bytes:
            return ParseResult.failed(
                [f"File size exceeds the maximum of {max_bytes // (1024 * 1024)}MB"]
            )

        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            return ParseResult.failed([f"File is not valid UTF-8 text (byte {e.start}: {e.reason})"])

        if not text.strip():
            return ParseResult.failed(["File is empty"])

        try:
            rows = self._rows(text)
            first = next(rows, None)
            row_count = sum(1 for _ in rows)
        except csv.Error as e:
            return ParseResult.failed([f"Malformed CSV: {e}"])

        if first is None:
            return ParseResult.failed(["File is empty"])
        header = [column.strip() for column in first[1]]
        errors = self._check_header(header)
        if errors:
            return ParseResult.failed(errors)

        if row_count == 0:
            return ParseResult.failed(["CSV must have a header row and at least one data row"])

        if row_count > self.policy.max_rows:
            return ParseResult.failed(
                [f"File has {row_count} data rows; the maximum is {self.policy.max_rows}"]
            )

        logger.info(f"Parsed CSV header with {len(header)} columns and {row_count} data rows")
        return ParseResult(parser=self, text=text, header=header, row_count=row_count)

    def iter_records(self, text: str, header: List[str]) -> Iterator[CandidateRecord]:
        columns = self._map_columns(header)
        password_index = next((i for i, f in columns.items() if f == FieldName.PASSWORD), None)
        rows = self._rows(text)
        next(rows)

        for row_number, (_, cells) in enumerate(rows, start=1):
            parse_errors = []
            if len(cells) != len(header):
                parse_errors.append(f"expected {len(header)} columns, found {len(cells)}")
                logger.warning(f"Row {row_number} has {len(cells)} columns, header has {len(header)}")

            mapped: Dict[FieldName, str] = {}
            raw: Dict[str, str] = {}
            for index, value in enumerate(cells[: len(header)]):
                field = columns.get(index)
                if field == FieldName.PASSWORD:
                    continue
                raw[header[index]] = value
                if field is not None:
                    mapped[field] = value
            # Secrets never land in the raw column map
            if password_index is not None and password_index < len(cells):
                mapped[FieldName.PASSWORD] = cells[password_index]

            yield self._build_record(row_number, mapped, raw, parse_errors)

    def _rows(self, text: str) -> Iterator[Tuple[int, List[str]]]:
        """Yield non-blank rows with their physical line number."""
        reader = csv.reader(io.StringIO(text))
        for cells in reader:
            if not cells or all(not cell.strip() for cell in cells):
                continue
            yield reader.line_num, cells

    def _map_columns(self, header: List[str]) -> Dict[int, FieldName]:
        """
        Map header positions to directory fields.

        Unknown columns are ignored; when two columns map to the same field
        the first one wins.
        """
        columns: Dict[int, FieldName] = {}
        seen = set()
        for index, column in enumerate(header):
            field = self.policy.field_for_header(column)
            if field is None:
                logger.debug(f"Ignoring unknown column '{column}'")
                continue
            if field in seen:
                logger.warning(f"Column '{column}' duplicates field '{field.value}', ignoring it")
                continue
            seen.add(field)
            columns[index] = field
        return columns

    def _check_header(self, header: List[str]) -> List[str]:
        present = set(self._map_columns(header).values())
        errors = []
        missing = sorted(f.value for f in REQUIRED_FIELDS - present)
        if missing:
            errors.append(f"Missing required columns: {', '.join(missing)}")
        if not present.intersection(IDENTITY_FIELDS):
            errors.append(
                "Missing identity column: one of "
                + ", ".join(f.value for f in IDENTITY_FIELDS)
                + " is required"
            )
        return errors
