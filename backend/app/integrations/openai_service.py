"""AI writing helpers backed by OpenAI chat completions in JSON mode.

Nothing here persists anything; callers decide what to do with the output.
Any API failure or unusable response raises GenerationFailedError.
"""

import json
import logging
from datetime import date
from typing import Literal
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, Field, ValidationError

from app.core.config import settings
from app.core.errors import GenerationFailedError
from app.core.tracing import get_tracer

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

_openai_client: AsyncOpenAI | None = None


def get_openai_client() -> AsyncOpenAI:
    """Get or create the OpenAI client."""
    global _openai_client

    if _openai_client is None:
        _openai_client = AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=settings.OPENAI_TIMEOUT_SECONDS,
        )

    return _openai_client


Priority = Literal["low", "medium", "high"]


class LeadContext(BaseModel):
    name: str
    company: str = ""
    website: str = ""
    phone: str = ""
    notes: str = ""


class GeneratedEmail(BaseModel):
    subject: str
    body: str


class CallLogAnalysis(BaseModel):
    summary: str
    has_task: bool = False
    task_title: str | None = None
    task_description: str | None = None
    task_due_date: date | None = None
    task_priority: Priority | None = None


class ExtractedTask(BaseModel):
    title: str
    description: str = ""
    due_date: date
    priority: Priority = "medium"


class TaskExtraction(BaseModel):
    has_tasks: bool = False
    tasks: list[ExtractedTask] = Field(default_factory=list)


async def _complete_json(operation: str, messages: list[dict[str, str]]) -> str:
    with tracer.start_as_current_span(f"openai.{operation}") as span:
        span.set_attribute("model", settings.OPENAI_MODEL)
        try:
            response = await get_openai_client().chat.completions.create(
                model=settings.OPENAI_MODEL,
                messages=messages,
                response_format={"type": "json_object"},
            )
        except OpenAIError as e:
            logger.error("OpenAI request failed", extra={"operation": operation, "error": str(e)})
            raise GenerationFailedError() from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            logger.error("OpenAI returned no content", extra={"operation": operation})
            raise GenerationFailedError("AI returned an empty response")
        return content


def _parse(operation: str, content: str, model: type[BaseModel]) -> BaseModel:
    try:
        return model.model_validate(json.loads(content))
    except (ValueError, ValidationError) as e:
        logger.error("OpenAI returned unusable JSON", extra={"operation": operation, "error": str(e)})
        raise GenerationFailedError("AI returned a malformed response") from e


async def generate_outreach_email(
    lead: LeadContext,
    instruction: str,
    sender_name: str,
    attachment_names: list[str] | None = None,
) -> GeneratedEmail:
    """Write a personalized acquisition email for one lead.

    The email is written in the language of `instruction`.
    """
    system = (
        "You are an expert in business acquisition and copywriting. "
        "You write professional, persuasive and personalized emails. "
        "Detect the language of the user's instruction and write the email in that same language. "
        "Keep the tone professional yet accessible. "
        "Do not use placeholders like [Date] unless absolutely necessary. "
        f"The sender is: {sender_name}."
    )

    attachment_context = ""
    if attachment_names:
        attachment_context = (
            f"These files are attached: {', '.join(attachment_names)}. "
            "Refer to them in the text where relevant."
        )

    prompt = f"""
    Write an acquisition email for this prospect:
    Name: {lead.name}
    Company: {lead.company}
    Website: {lead.website}
    Phone: {lead.phone}
    Current notes about the prospect: {lead.notes}

    Instruction for the content of the email: {instruction}
    {attachment_context}

    Return a valid JSON object with the fields "subject" and "body".
    """

    content = await _complete_json("generate_email", [
        {"role": "system", "content": system},
        {"role": "user", "content": prompt},
    ])
    email = _parse("generate_email", content, GeneratedEmail)

    logger.info("Generated outreach email", extra={"lead_company": lead.company or None})
    return email


async def analyze_call_log(transcript: str, lead_name: str, today: date | None = None) -> CallLogAnalysis:
    """Summarize a call transcript and pull out at most one follow-up task."""
    today = today or date.today()

    prompt = f"""
    Analyze this transcript of a phone call or note about the client '{lead_name}'.
    Current date: {today.isoformat()}.

    Transcript: "{transcript}"

    1. Write a short, professional summary of the conversation for the CRM. Start with today's date.
    2. Decide whether a follow-up action is needed. If so, describe the task.
    3. If a relative time is mentioned (e.g. "next Tuesday", "in 2 days"), compute the exact date
       (YYYY-MM-DD) from the current date. If there is a task but no date, use tomorrow.

    Return a JSON object:
    {{
      "summary": "...",
      "has_task": true/false,
      "task_title": "...",
      "task_description": "...",
      "task_due_date": "YYYY-MM-DD",
      "task_priority": "low" | "medium" | "high"
    }}
    """

    content = await _complete_json("analyze_call_log", [{"role": "user", "content": prompt}])
    return _parse("analyze_call_log", content, CallLogAnalysis)


async def extract_tasks(text: str, recipient_names: list[str], today: date | None = None) -> TaskExtraction:
    """Find action items in a campaign instruction, merging related ones."""
    today = today or date.today()

    prompt = f"""
    Analyze the following instruction for an email campaign.
    Current date: {today.isoformat()}.
    Recipients: {', '.join(recipient_names)}

    Instruction: "{text}"

    1. Identify any tasks, follow-ups, meetings, calls, deadlines or action items mentioned.
    2. If several tasks belong to the same activity, consolidate them into ONE task.
    3. For each task give a clear title, a description, a due date (YYYY-MM-DD; resolve
       relative dates from the current date, default to tomorrow) and a priority:
       "high" (urgent, ASAP), "medium" (normal follow-up) or "low" (nice to have).

    Return a JSON object:
    {{
      "has_tasks": true/false,
      "tasks": [
        {{"title": "...", "description": "...", "due_date": "YYYY-MM-DD", "priority": "low" | "medium" | "high"}}
      ]
    }}

    If there are no tasks, return {{"has_tasks": false, "tasks": []}}.
    """

    content = await _complete_json("extract_tasks", [
        {"role": "system", "content": "You are a helpful assistant that extracts actionable tasks."},
        {"role": "user", "content": prompt},
    ])
    result = _parse("extract_tasks", content, TaskExtraction)

    logger.info("Extracted tasks", extra={"task_count": len(result.tasks)})
    return result
