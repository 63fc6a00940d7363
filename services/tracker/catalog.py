"""Item name lookup for game ConfigBaseIds."""
import json
from pathlib import Path
from typing import Mapping, Optional

import structlog

logger = structlog.get_logger()

# ConfigBaseId of Flame Elementium, the default primary resource
FLAME_ELEMENTIUM_ID = "100300"
FLAME_ELEMENTIUM = "Flame Elementium"


class ItemCatalog:
    """Read-only ConfigBaseId -> English name table."""

    def __init__(self, names: Optional[Mapping[str, str]] = None):
        self._names = {FLAME_ELEMENTIUM_ID: FLAME_ELEMENTIUM}
        if names:
            self._names.update({str(k): v for k, v in names.items()})

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._names

    def name_for(self, item_id: str) -> str:
        """Resolve an item id, falling back to "Unknown <id>"."""
        return self._names.get(item_id, f"Unknown {item_id}")

    @classmethod
    def from_file(cls, path: Path) -> "ItemCatalog":
        """Load a JSON object of id -> name; a missing or bad file yields the defaults."""
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            logger.warning("item_catalog_not_found", path=str(path))
            return cls()
        except (OSError, json.JSONDecodeError) as e:
            logger.error("item_catalog_load_failed", path=str(path), error=str(e))
            return cls()

        if not isinstance(raw, dict):
            logger.warning("invalid_item_catalog_type", path=str(path), type=type(raw).__name__)
            return cls()

        catalog = cls({k: v for k, v in raw.items() if isinstance(v, str)})
        logger.info("item_catalog_loaded", path=str(path), count=len(catalog))
        return catalog


DEFAULT_CATALOG = ItemCatalog()


def load_item_values(path: Optional[Path]) -> dict[str, float]:
    """Load a JSON object of item name -> unit value."""
    if path is None:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error("item_values_load_failed", path=str(path), error=str(e))
        return {}

    values = {}
    for name, value in (raw.items() if isinstance(raw, dict) else []):
        try:
            values[str(name)] = float(value)
        except (TypeError, ValueError):
            logger.warning("invalid_item_value", item_name=name, value=value)
            continue
    logger.info("item_values_loaded", path=str(path), count=len(values))
    return values
