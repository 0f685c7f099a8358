"""
Record Loader for the reconciliation engine.

This module provides the main interface for turning uploaded or fetched
buffers into a ParseResult, picking the parser that recognizes the format.
"""

import logging
from pathlib import Path
from typing import Any, List, Optional, Union

from ..engine.policy import ImportPolicy
from .formats.base import ParseResult, RecordParser
from .formats.csv_loader import CSVRecordParser
from .formats.json_records import JSONRecordParser

logger = logging.getLogger(__name__)


class RecordLoader:
    """
    Input format coordinator.

    Detects whether the incoming buffer is a JSON array or CSV text and
    parses it with the matching parser.
    """

    def __init__(self, policy: Optional[ImportPolicy] = None):
        self.policy = policy or ImportPolicy()
        self.parsers: List[RecordParser] = [
            JSONRecordParser(self.policy),
            CSVRecordParser(self.policy),
        ]

        logger.info(f"Initialized record loader with {len(self.parsers)} parsers")

    def load(self, data: Union[bytes, str, List[Any]]) -> ParseResult:
        """
        Parse raw input.

        Args:
            data: CSV or JSON content (bytes or text), or a decoded JSON array

        Returns:
            ParseResult; unrecognized input yields a global error
        """
        for parser in self.parsers:
            if parser.can_parse(data):
                logger.debug(f"Using parser: {parser.__class__.__name__}")
                return parser.parse(data)

        if isinstance(data, (bytes, str)) and not data.strip():
            return ParseResult.failed(["File is empty"])
        return ParseResult.failed(["Unrecognized file format; expected CSV or a JSON array"])

    def load_file(self, file_path: Union[str, Path]) -> ParseResult:
        """
        Parse a file from disk.

        Raises:
            FileNotFoundError: If the file does not exist
        """
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"Import file not found: {file_path}")
        return self.load(path.read_bytes())
