"""Legacy source adapters implementing LegacySourcePort."""

from clinisync.adapters.sources.csv_export_source import CsvExportSource

__all__ = ["CsvExportSource"]
