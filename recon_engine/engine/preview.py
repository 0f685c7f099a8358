"""
Preview builder for bulk imports.

Aggregates validated records into the counts an operator reviews before
executing. Nothing here persists anything.
"""

from typing import List, Optional

from ..models import PreviewSummary, RowAction, ValidatedRecord

SAMPLE_SIZE = 5


def build_preview(
    validated: List[ValidatedRecord],
    file_name: str = "upload.csv",
    parse_errors: Optional[List[str]] = None,
    sample_size: int = SAMPLE_SIZE,
) -> PreviewSummary:
    """
    Summarize validated records.

    The samples hold the first valid and first invalid rows for display;
    execution always works on the full record list.
    """
    valid = [v for v in validated if v.outcome.action != RowAction.SKIP]
    invalid = [v for v in validated if v.outcome.action == RowAction.SKIP]

    return PreviewSummary(
        success=True,
        file_name=file_name,
        total_rows=len(validated),
        valid_rows=len(valid),
        invalid_rows=len(invalid),
        create_count=sum(1 for v in valid if v.outcome.action == RowAction.CREATE),
        update_count=sum(1 for v in valid if v.outcome.action == RowAction.UPDATE),
        valid_sample=valid[:sample_size],
        invalid_sample=invalid[:sample_size],
        parse_errors=list(parse_errors or []),
    )


def failed_preview(global_errors: List[str], file_name: str = "upload.csv") -> PreviewSummary:
    """Preview for a file that could not be parsed."""
    return PreviewSummary(success=False, file_name=file_name, global_errors=list(global_errors))
