from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ContentItem(BaseModel):
    """
    Snapshot of one piece of source content, taken at scan time.

    ``sections`` carries named fields (title, description, attributes...)
    for content types chunked with structure preserved.
    """
    type: str
    id: str
    title: str = ""
    content: str = ""
    sections: Optional[Dict[str, Any]] = None
    modified_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return f"{self.type}:{self.id}"
