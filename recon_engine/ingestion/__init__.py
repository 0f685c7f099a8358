"""
User Record Ingestion Package.

This package provides parsers for uploaded user files (CSV and JSON
arrays) and fetchers for the remote sources of scheduled imports.
"""

from .formats.base import ParseResult, RecordParser
from .formats.csv_loader import CSVRecordParser
from .formats.json_records import JSONRecordParser
from .record_loader import RecordLoader
from .source_fetcher import HttpSourceFetcher, SourceFetcher

__all__ = [
    "RecordLoader",
    "RecordParser",
    "ParseResult",
    "CSVRecordParser",
    "JSONRecordParser",
    "SourceFetcher",
    "HttpSourceFetcher",
]
