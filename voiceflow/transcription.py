"""Transcript analysis: title, summary and task extraction via an OpenAI chat model.

Falls back to a plain title/summary with no tasks whenever the model is not
configured or the call fails, so a transcript is never lost.
"""

import json
import logging

import openai

from voiceflow.models import ExtractedTask

logger = logging.getLogger(__name__)

FALLBACK_TITLE = "Transcribed Conversation"
CATEGORIES = ("work", "personal", "urgent")
PRIORITIES = ("high", "medium", "low")

SYSTEM_PROMPT = """You are a personal assistant that analyzes conversation transcripts.
Given a transcript:
1. Generate an appropriate title for the conversation.
2. Write a concise summary (at most 2 sentences).
3. Extract every action item, with these fields:
   - title: short, action-oriented task title
   - description: what needs to be done
   - dueDate: YYYY-MM-DD only if a calendar date is mentioned, otherwise descriptive text such as "tomorrow"
   - category: one of "work", "personal", "urgent"
   - priority: one of "high", "medium", "low"
   - estimatedMinutes: number, if stated
   - location: where the task happens, if stated
   - people: array of names involved, if stated
   - recurring: true or false
   - recurringPattern: e.g. "daily", "weekly on Mondays", if recurring
Phrases like "we need to", "I should", "don't forget to", "remember to" usually mark tasks.
Infer category and priority from context when they are not stated.
Respond with a JSON object: {"title": ..., "summary": ..., "tasks": [...]}"""


def fallback_analysis(text: str) -> dict:
    return {
        "title": FALLBACK_TITLE,
        "summary": text[:100] + "...",
        "tasks": [],
    }


def normalize_task(raw: dict) -> ExtractedTask:
    category = raw.get("category")
    priority = raw.get("priority")
    minutes = raw.get("estimatedMinutes")
    people = raw.get("people")
    recurring = raw.get("recurring") if isinstance(raw.get("recurring"), bool) else False
    return ExtractedTask(
        title=raw.get("title") or "Untitled Task",
        description=raw.get("description") or "",
        due_date=raw.get("dueDate") or None,
        category=category if category in CATEGORIES else "work",
        priority=priority if priority in PRIORITIES else "medium",
        estimated_minutes=minutes if isinstance(minutes, (int, float)) and not isinstance(minutes, bool) else None,
        location=raw.get("location") or None,
        people=[str(p) for p in people] if isinstance(people, list) else [],
        recurring=recurring,
        recurring_pattern=raw.get("recurringPattern") if recurring else None,
    )


def normalize_analysis(result: dict, text: str) -> dict:
    """Coerce a model response into ``{title, summary, tasks}``."""
    tasks = result.get("tasks")
    return {
        "title": result.get("title") or FALLBACK_TITLE,
        "summary": result.get("summary") or text[:100] + "...",
        "tasks": [normalize_task(t).to_dict() for t in tasks if isinstance(t, dict)]
        if isinstance(tasks, list) else [],
    }


class TranscriptionAnalyzer:
    def __init__(self, api_key: str = "", model: str = "gpt-4o", client=None):
        self.model = model
        if client is not None:
            self._client = client
        elif api_key:
            self._client = openai.AsyncOpenAI(api_key=api_key)
        else:
            self._client = None

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def analyze(self, text: str) -> dict:
        """Analyze a transcript.

        Args:
            text: Captured or typed text.

        Returns:
            ``{"title", "summary", "tasks"}``; the fallback result on any failure.
        """
        if not self.enabled:
            logger.info("OpenAI not configured, using fallback analysis")
            return fallback_analysis(text)
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": text},
                ],
                response_format={"type": "json_object"},
            )
            content = response.choices[0].message.content
            if not content:
                raise ValueError("Empty response from model")
            result = json.loads(content)
            if not isinstance(result, dict):
                raise ValueError("Model response is not a JSON object")
        except Exception as e:
            logger.error(f"Transcription analysis failed, using fallback: {e}")
            return fallback_analysis(text)

        analysis = normalize_analysis(result, text)
        logger.info(f"Analyzed transcript: {len(analysis['tasks'])} task(s)")
        return analysis
