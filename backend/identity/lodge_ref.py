"""
Identity Core - Lodge References

Legacy records store the same lodge identifier as a plain string, as an
extended-JSON typed id (``{"$oid": "..."}``) or as a populated lodge
document (``{"_id": ...}``). ``LodgeRef`` reduces all of them to one
canonical string so comparisons never depend on how a record was written.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class LodgeRef:
    """Canonical lodge identifier"""
    value: str

    def __str__(self) -> str:
        return self.value

    @classmethod
    def coerce(cls, raw: Any) -> Optional["LodgeRef"]:
        """
        Convert any stored representation to a LodgeRef.

        Returns None for empty or unusable values.
        """
        if raw is None:
            return None
        if isinstance(raw, LodgeRef):
            return raw
        if isinstance(raw, dict):
            if "$oid" in raw:
                return cls.coerce(raw["$oid"])
            if "_id" in raw:
                return cls.coerce(raw["_id"])
            return None
        if isinstance(raw, (list, tuple, set, bool)):
            return None

        value = str(raw).strip()
        if not value:
            return None
        return cls(value)

    @classmethod
    def parse(cls, raw: Any) -> "LodgeRef":
        """Like coerce, but raises ValueError when no identifier is present."""
        ref = cls.coerce(raw)
        if ref is None:
            raise ValueError("Lodge ID is required")
        return ref

    def matches(self, raw: Any) -> bool:
        other = LodgeRef.coerce(raw)
        return other is not None and other.value == self.value

    def stored_forms(self) -> List[Any]:
        """Every shape this identifier takes in stored records."""
        return [self.value, self.typed()]

    def typed(self) -> Dict[str, str]:
        return {"$oid": self.value}


def canonical_lodges(values: Any) -> List[str]:
    """Canonical string forms of a list of lodge references, order kept, duplicates dropped."""
    seen = []
    for raw in values or []:
        ref = LodgeRef.coerce(raw)
        if ref is not None and ref.value not in seen:
            seen.append(ref.value)
    return seen
