from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel


class SendMessageRequest(BaseModel):
    message: Optional[str] = None
    depth: Optional[int] = None
    model_id: Optional[str] = None


class RegenerateRequest(BaseModel):
    messageIndex: Optional[int] = None
    depth: Optional[int] = None
    model_id: Optional[str] = None


class PillsResponse(BaseModel):
    sourceMessageId: Optional[str] = None
    question: str = ""
    answerPills: List[str] = []
    correctIndex: int = -1
    explanation: str = ""
    followupPills: List[str] = []


class StudyToolRequest(BaseModel):
    model_id: Optional[str] = None
