from __future__ import annotations

from typing import List, Protocol

from ..models import DetailEntity


class Exporter(Protocol):
    def export(self, products: List[DetailEntity], path: str) -> None:
        ...


def exporter_for(path: str) -> Exporter:
    """Pick an exporter from the output file extension (.csv, anything else is JSON)."""
    if path.lower().endswith(".csv"):
        from .csv_exporter import CSVExporter

        return CSVExporter()
    from .json_exporter import JSONExporter

    return JSONExporter()
