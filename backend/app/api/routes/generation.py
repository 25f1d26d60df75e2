"""AI writing assistance routes."""

import logging
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from app.core.errors import GenerationFailedError
from app.integrations.openai_service import (
    CallLogAnalysis,
    GeneratedEmail,
    LeadContext,
    TaskExtraction,
    analyze_call_log,
    extract_tasks,
    generate_outreach_email,
)

logger = logging.getLogger(__name__)

generation_router = APIRouter(prefix="/generate", tags=["generation"])


class GenerateEmailRequest(BaseModel):
    lead: LeadContext
    instruction: str
    sender_name: str
    attachment_names: list[str] = Field(default_factory=list)


class CallLogRequest(BaseModel):
    transcript: str
    lead_name: str


class ExtractTasksRequest(BaseModel):
    text: str
    recipient_names: list[str] = Field(default_factory=list)


@generation_router.post("/email", response_model=GeneratedEmail)
async def generate_email(request: GenerateEmailRequest) -> GeneratedEmail:
    try:
        return await generate_outreach_email(
            request.lead,
            request.instruction,
            request.sender_name,
            request.attachment_names,
        )
    except GenerationFailedError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@generation_router.post("/call-log", response_model=CallLogAnalysis)
async def call_log(request: CallLogRequest) -> CallLogAnalysis:
    """Summarize a call and suggest a follow-up task."""
    try:
        return await analyze_call_log(request.transcript, request.lead_name)
    except GenerationFailedError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@generation_router.post("/tasks", response_model=TaskExtraction)
async def tasks(request: ExtractTasksRequest) -> TaskExtraction:
    try:
        return await extract_tasks(request.text, request.recipient_names)
    except GenerationFailedError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
