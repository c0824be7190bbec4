from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
import json
from pathlib import Path
from typing import Any

from parsha_songs.core.config import get_settings

DEFAULT_REFERENCE_DATA_PATH = Path(__file__).resolve().parent.parent / "data" / "parshiot.json"


@dataclass(slots=True)
class Haftarah:
    id: str
    name: str


@dataclass(slots=True)
class Parasha:
    id: str
    name_en: str
    name_he: str | None
    book: str | None
    order_index: int
    haftarot: list[Haftarah] = field(default_factory=list)


class ReferenceCatalog:
    """Read-only lookup over the curated list of weekly portions."""

    def __init__(self, parshiot: list[Parasha]) -> None:
        self._parshiot = sorted(parshiot, key=lambda parasha: parasha.order_index)
        self._by_id = {parasha.id: parasha for parasha in self._parshiot}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ReferenceCatalog:
        parshiot: list[Parasha] = []
        for index, raw in enumerate(payload.get("parshiot") or [], start=1):
            haftarot_by_location = raw.get("haftarot") or {}
            haftarot = [
                Haftarah(id=str(item["id"]), name=str(item.get("name") or item["id"]))
                for item in haftarot_by_location.get("diaspora") or []
            ]
            parshiot.append(
                Parasha(
                    id=str(raw["id"]),
                    name_en=str(raw.get("name_en") or raw["id"]),
                    name_he=raw.get("name_he"),
                    book=raw.get("book"),
                    order_index=int(raw.get("order_index") or index),
                    haftarot=haftarot,
                )
            )
        return cls(parshiot)

    def list_parshiot(self) -> list[Parasha]:
        return list(self._parshiot)

    def get_parasha(self, parasha_id: str) -> Parasha | None:
        return self._by_id.get(parasha_id)

    def has_haftarah(self, parasha_id: str, haftarah_id: str | None) -> bool:
        parasha = self._by_id.get(parasha_id)
        if parasha is None or not haftarah_id:
            return False
        return any(haftarah.id == haftarah_id for haftarah in parasha.haftarot)


def load_reference_catalog(path: str | None = None) -> ReferenceCatalog:
    if path:
        raw_text = Path(path).read_text(encoding="utf-8")
    else:
        raw_text = DEFAULT_REFERENCE_DATA_PATH.read_text(encoding="utf-8")
    return ReferenceCatalog.from_payload(json.loads(raw_text))


@lru_cache
def get_reference_catalog() -> ReferenceCatalog:
    return load_reference_catalog(get_settings().reference_data_path)
