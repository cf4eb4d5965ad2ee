"""
chatdash/models/chat.py

Conversation and message models.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str
    used_tools: Optional[List[Dict[str, Any]]] = None
    timestamp: Optional[datetime] = None


class Conversation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    title: str
    created_at: datetime
    updated_at: datetime
