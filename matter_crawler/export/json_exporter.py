from __future__ import annotations

import json
from typing import List
from pathlib import Path

from ..models import DetailEntity


class JSONExporter:
    def export(self, products: List[DetailEntity], path: str) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            payload = {"count": len(products), "products": [p.to_dict() for p in products]}
            json.dump(payload, f, indent=2, ensure_ascii=False)
