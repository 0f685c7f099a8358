"""
Base classes for tabular record parsers.

This module provides the foundation for turning uploaded or fetched
buffers into CandidateRecord objects, plus the ParseResult container the
rest of the engine iterates over.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional

from pydantic import SecretStr

from ...models import CandidateRecord, FieldName

logger = logging.getLogger(__name__)


class ParseResult:
    """
    Outcome of parsing one input buffer.

    Global errors mean nothing was parsed. Otherwise iterating yields the
    records in file order; every iteration re-reads the stored text, so the
    same result can be walked again (for instance by a retry).
    """

    def __init__(
        self,
        parser: Optional["RecordParser"] = None,
        text: str = "",
        header: Optional[List[str]] = None,
        row_count: int = 0,
        global_errors: Optional[List[str]] = None,
    ):
        self._parser = parser
        self._text = text
        self.header = header or []
        self.row_count = row_count
        self.global_errors = global_errors or []

    @classmethod
    def failed(cls, errors: List[str]) -> "ParseResult":
        return cls(global_errors=errors)

    @property
    def ok(self) -> bool:
        return not self.global_errors

    def __iter__(self) -> Iterator[CandidateRecord]:
        if not self.ok or self._parser is None:
            return iter(())
        return self._parser.iter_records(self._text, self.header)

    def __len__(self) -> int:
        return self.row_count

    def records(self) -> List[CandidateRecord]:
        return list(self)

    def parse_errors(self) -> List[str]:
        """Row-level parse problems, e.g. ragged rows."""
        return [
            f"Row {record.row_number}: {error}"
            for record in self
            for error in record.parse_errors
        ]


class RecordParser(ABC):
    """Abstract base class for record format parsers."""

    @abstractmethod
    def parse(self, data: Any) -> ParseResult:
        """
        Parse a raw buffer.

        Args:
            data: Raw data in the format expected by this parser

        Returns:
            ParseResult holding either global errors or the record sequence
        """
        pass

    @abstractmethod
    def can_parse(self, data: Any) -> bool:
        """
        Check if this parser can handle the given data format.

        Args:
            data: Raw data to check

        Returns:
            True if this parser can handle the data, False otherwise
        """
        pass

    @abstractmethod
    def iter_records(self, text: str, header: List[str]) -> Iterator[CandidateRecord]:
        """Yield the records of already-checked text in file order."""
        pass

    def _build_record(
        self,
        row_number: int,
        mapped: Dict[FieldName, str],
        raw: Dict[str, str],
        parse_errors: Optional[List[str]] = None,
    ) -> CandidateRecord:
        """
        Coerce mapped column values into a CandidateRecord.

        Values are stripped and blanks become None; role and user type are
        lowercased.
        """
        values: Dict[str, Any] = {}
        for field, value in mapped.items():
            value = (value or "").strip()
            if not value:
                continue
            if field in (FieldName.ROLE, FieldName.USER_TYPE):
                value = value.lower()
            if field == FieldName.PASSWORD:
                values["password"] = SecretStr(value)
            else:
                values[field.value] = value

        return CandidateRecord(
            row_number=row_number,
            raw=raw,
            parse_errors=parse_errors or [],
            **values,
        )
