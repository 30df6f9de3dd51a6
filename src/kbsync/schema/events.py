from datetime import datetime
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field

from .base import utcnow
from .enums import ChangeAction, ChangePriority


class ChangeEvent(BaseModel):
    """
    A single content mutation notification.

    Immutable. Consumed and discarded when the aggregator flushes; only
    ``content_type``, ``action`` and ``content_id`` drive the dispatched work.
    """
    model_config = ConfigDict(frozen=True)

    action: ChangeAction
    content_type: str
    content_id: str
    priority: ChangePriority = ChangePriority.NORMAL
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)
