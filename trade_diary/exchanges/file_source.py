"""
Fill source reading exported fills from a JSON file.

Accepts a bare list of rows or the raw exchange envelopes
(``{"result": {"list": [...]}}`` for Bybit, ``{"data": [...]}`` for OKX).
Rows are mapped with the exchange parser matching ``source``; any other
source uses the generic RawFill.from_dict mapping.
"""
from pathlib import Path
from typing import Any, List
import json

from trade_diary.domain.models import RawFill, SOURCE_BYBIT, SOURCE_IMPORT, SOURCE_OKX
from trade_diary.exceptions import FillSourceError
from trade_diary.exchanges import bybit, okx
from trade_diary.monitoring.logger import get_logger

logger = get_logger(__name__)


def _extract_rows(payload: Any) -> List[dict]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        result = payload.get("result")
        if isinstance(result, dict) and isinstance(result.get("list"), list):
            return result["list"]
        if isinstance(payload.get("data"), list):
            return payload["data"]
        if isinstance(payload.get("fills"), list):
            return payload["fills"]
    raise FillSourceError("Unrecognized fill export format")


class JsonFileFillSource:
    """FillSource over a JSON export. The same file serves every owner."""

    def __init__(self, path: str | Path, source: str = SOURCE_IMPORT):
        self.path = Path(path)
        self.source = source

    def fetch_fills(self, owner_id: int) -> List[RawFill]:
        try:
            payload = json.loads(self.path.read_text())
        except OSError as e:
            raise FillSourceError(f"Cannot read fill file {self.path}: {e}") from e
        except json.JSONDecodeError as e:
            raise FillSourceError(f"Invalid JSON in {self.path}: {e}") from e

        rows = _extract_rows(payload)
        if self.source == SOURCE_BYBIT:
            fills = bybit.parse_executions(rows)
        elif self.source == SOURCE_OKX:
            fills = okx.parse_fills(rows)
        else:
            fills = [RawFill.from_dict(row) for row in rows]

        logger.info("Fills loaded from file", path=str(self.path), source=self.source, owner_id=owner_id, rows=len(fills))
        return fills
