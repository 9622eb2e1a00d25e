from __future__ import annotations
from datetime import datetime
from typing import Any
from pydantic import BaseModel


class ChangeEvent(BaseModel):
    entity_type: str  # intervention | dispatch_attempt | payment_authorization
    entity_id: str
    event: str
    data: dict[str, Any] = {}
    occurred_at: datetime
