"""Screen time value exchanged with the service."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any, Dict

from .crypto import canonical_json_dumps
from .errors import ST_E_ENCODING, st_error


@dataclass(frozen=True)
class ScreenTimeData:
    """Minutes available and used for one id on one day."""

    available: int = 0
    used: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json_bytes(self) -> bytes:
        return canonical_json_dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_dict(cls, data: Any) -> "ScreenTimeData":
        if not isinstance(data, dict):
            raise st_error(ST_E_ENCODING, "screen time must be a JSON object", got=type(data).__name__)
        values: Dict[str, int] = {}
        for name in ("available", "used"):
            v = data.get(name, 0)
            # bool is a subclass of int
            if isinstance(v, bool) or not isinstance(v, int):
                raise st_error(ST_E_ENCODING, f"screen time '{name}' must be an integer", got=type(v).__name__)
            values[name] = v
        return cls(**values)

    @classmethod
    def from_json_bytes(cls, data: bytes) -> "ScreenTimeData":
        try:
            obj = json.loads(bytes(data).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise st_error(ST_E_ENCODING, f"screen time is not valid JSON: {e}") from e
        return cls.from_dict(obj)
