from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional


class FormatError(ValueError):
    """Malformed or truncated binary/text input.

    `offset` is the byte position in the buffer being decoded when known.
    """

    def __init__(self, message: str, offset: Optional[int] = None) -> None:
        self.offset = offset
        if offset is not None:
            message = f"{message} (at byte {offset})"
        super().__init__(message)


class DataError(ValueError):
    """Semantically invalid input, e.g. a sample id absent from the registry."""


@dataclass(frozen=True)
class Issue:
    """A per-item problem reported while processing of sibling items continues."""

    kind: str
    message: str
    sample_id: Optional[str] = None
    root_note: Optional[int] = None

    def to_dict(self) -> Dict[str, object]:
        out: Dict[str, object] = {"kind": self.kind, "message": self.message}
        if self.sample_id is not None:
            out["sampleId"] = self.sample_id
        if self.root_note is not None:
            out["rootNote"] = self.root_note
        return out
