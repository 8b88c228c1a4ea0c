import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import fastjsonschema

logger = logging.getLogger("crash-observer")

SCHEMA_DIR = Path(__file__).parent / "ws_schema"


class SchemaRegistry:
    """Compiled JSON schemas for inbound event payloads (warn mode only)."""

    def __init__(self, schema_dir: Path = SCHEMA_DIR):
        self.schema_dir = schema_dir
        self._raw: Dict[str, Dict[str, Any]] = {}
        self._validators: Dict[str, Any] = {}
        self._descriptors: Dict[str, Dict[str, Any]] = {}
        self._inbound_to_key: Dict[str, str] = {
            "update": "statusUpdate",
            "betCreated": "wagerEvent",
            "bet": "wagerEvent",
            "crash": "settlementEvent",
            "end": "settlementEvent",
        }
        try:
            self._load_all()
        except Exception as e:
            logger.warning(f"SchemaRegistry initialization warning: {e}")

    def _load_all(self):
        if not self.schema_dir.exists():
            logger.warning(f"Schema directory not found: {self.schema_dir}")
            return
        for p in sorted(self.schema_dir.glob("*.json")):
            try:
                with open(p, "r") as f:
                    self._raw[p.stem] = json.load(f)
            except Exception as e:
                logger.warning(f"Failed to load schema {p}: {e}")
        for key, schema in self._raw.items():
            try:
                self._validators[key] = fastjsonschema.compile(schema)
                props = {}
                if isinstance(schema.get("properties"), dict):
                    for k, v in schema["properties"].items():
                        if isinstance(v, dict):
                            t = v.get("type")
                            if isinstance(t, list):
                                # choose first non-null
                                t = next((x for x in t if x != "null"), t[0] if t else None)
                            props[k] = {"type": t}
                self._descriptors[key] = {
                    "title": schema.get("title") or key,
                    "required": schema.get("required", []),
                    "properties": props,
                    "inboundTypes": sorted(t for t, k in self._inbound_to_key.items() if k == key),
                }
            except Exception as e:
                logger.warning(f"Failed to compile schema {key}: {e}")

    def validate(self, key: str, payload: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
        validator = self._validators.get(key)
        if not validator:
            return True, None
        try:
            validator(payload)
            return True, None
        except fastjsonschema.JsonSchemaException as e:
            return False, str(e)

    def validate_inbound(self, event_type: Any, payload: Dict[str, Any]) -> Tuple[bool, Optional[str], Optional[str]]:
        key = self._inbound_to_key.get(event_type) if isinstance(event_type, str) else None
        if not key:
            return True, None, None
        ok, err = self.validate(key, payload)
        return ok, err, key

    def describe(self) -> Dict[str, Any]:
        items = [{"key": key, **desc} for key, desc in self._descriptors.items()]
        items.sort(key=lambda x: x["key"])
        return {"items": items}
