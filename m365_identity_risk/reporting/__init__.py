"""Reporting package — multi-format output generation."""

from .json_export import (
    SCHEMA_VERSION,
    ExportFormatError,
    build_export,
    export_batch_summary,
    export_json,
    load_export,
)
from .csv_export import export_csv
from .executive_summary import export_executive_summary, render_executive_summary

__all__ = [
    "SCHEMA_VERSION",
    "ExportFormatError",
    "build_export",
    "export_batch_summary",
    "export_json",
    "load_export",
    "export_csv",
    "export_executive_summary",
    "render_executive_summary",
]
