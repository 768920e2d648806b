"""
Redaction Engine

Decides how much of a content record (report, logbook entry) a viewer sees:

    full      -> viewer clearance >= threshold, the body unchanged
    redacted  -> below threshold, but the author supplied a redacted version;
                 only that text is returned, attachments and fields are withheld
    denied    -> below threshold with nothing safe to show

render() is a pure decision. It never raises and never counts views; read
receipts belong to the caller.
"""
import enum
from dataclasses import dataclass
from typing import Any, Optional

from ouroboros.clearance import level_of

DEFAULT_VIEW_THRESHOLD = 1
INSUFFICIENT_CLEARANCE = "insufficient clearance"


class RenderStatus(str, enum.Enum):
    FULL = "full"
    REDACTED = "redacted"
    DENIED = "denied"


@dataclass(frozen=True)
class ContentRecord:
    body: Any
    min_clearance_to_view: Optional[int] = None
    is_redacted: bool = False
    redacted_version: Optional[str] = None

    @property
    def threshold(self) -> int:
        if self.min_clearance_to_view is None:
            return DEFAULT_VIEW_THRESHOLD
        return self.min_clearance_to_view


@dataclass(frozen=True)
class RenderedContent:
    status: RenderStatus
    payload: Any = None
    reason: Optional[str] = None

    @property
    def visible(self) -> bool:
        return self.status is not RenderStatus.DENIED

    def to_dict(self) -> dict:
        data = {"status": self.status.value, "payload": self.payload}
        if self.reason:
            data["reason"] = self.reason
        return data


def render(content: ContentRecord, viewer_clearance: Any) -> RenderedContent:
    if level_of(viewer_clearance) >= content.threshold:
        return RenderedContent(RenderStatus.FULL, content.body)

    if content.is_redacted and content.redacted_version:
        return RenderedContent(RenderStatus.REDACTED, content.redacted_version)

    return RenderedContent(RenderStatus.DENIED, None, INSUFFICIENT_CLEARANCE)
