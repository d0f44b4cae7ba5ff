from typing import Any

from attr import dataclass


@dataclass(slots=True, frozen=True)
class CachedValue:
    key: str
    value: Any
