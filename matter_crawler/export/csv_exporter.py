from __future__ import annotations

import csv
from dataclasses import fields
from typing import List
from pathlib import Path

from ..models import DetailEntity


class CSVExporter:
    """
    One row per certified product. Application categories are joined with "; ".
    """

    _headers = [f.name for f in fields(DetailEntity)]

    def export(self, products: List[DetailEntity], path: str) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="") as f:
            w = csv.writer(f)
            w.writerow(self._headers)
            for product in products:
                row = product.to_dict()
                row["application_categories"] = "; ".join(product.application_categories)
                w.writerow(["" if row[h] is None else row[h] for h in self._headers])
