from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import anthropic
from pydantic import ValidationError

from taskrelay.models.outcome import WorkOutcome
from taskrelay.models.work_item import WorkItem
from taskrelay.models.worker import Worker
from taskrelay.utils.config import Config

logger = logging.getLogger(__name__)


class CompletionService(Protocol):
    """Performs the actual work for a task and reports a structured outcome."""

    async def complete(self, item: WorkItem, worker: Worker) -> WorkOutcome: ...


class UnavailableCompletionService:
    """Fails every call; used when no completion backend is configured."""

    def __init__(self, reason: str = "ANTHROPIC_API_KEY not set"):
        self.reason = reason

    async def complete(self, item: WorkItem, worker: Worker) -> WorkOutcome:
        return WorkOutcome.failure(
            "completion service unavailable",
            details=f"{self.reason}; {item.id} cannot be executed by {worker.id}.",
        )


class AnthropicCompletionService:
    """Delegates task execution to an Anthropic model."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 4000,
        client: Any | None = None,
    ):
        self._model = model
        self._max_tokens = max_tokens
        self._client = client if client is not None else anthropic.AsyncAnthropic(api_key=api_key)

    async def complete(self, item: WorkItem, worker: Worker) -> WorkOutcome:
        system = (
            f"You are {worker.id}, a {', '.join(sorted(worker.capabilities))} specialist "
            "on a small automated team. Execute tasks professionally and autonomously."
        )
        prompt = (
            f"Task {item.id}: {item.title or '(untitled)'}\n"
            f"Capability: {item.capability}\n"
            f"Priority: {item.priority.value}\n\n"
            f"{item.content}\n\n"
            "When finished, respond with JSON only:\n"
            "{\n"
            '  "success": true | false,\n'
            '  "summary": "what was done",\n'
            '  "error": "short reason, required when success is false",\n'
            '  "details": "full diagnostic output, if any",\n'
            '  "artifact_url": "link to a published artifact, if any"\n'
            "}"
        )

        response = await self._client.messages.create(
            model=self._model,
            max_tokens=self._max_tokens,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        )
        text = "".join(
            getattr(block, "text", "")
            for block in response.content
            if getattr(block, "type", "text") == "text"
        )
        outcome = parse_completion(text)
        logger.info(
            "Completion for %s by %s: %s",
            item.id,
            worker.id,
            "success" if outcome.success else outcome.error,
        )
        return outcome


def parse_completion(text: str) -> WorkOutcome:
    """Turn a model response into a WorkOutcome; unusable text becomes a failure."""
    body = text.strip()
    if body.startswith("```"):
        body = body.strip("`")
        if body.startswith("json"):
            body = body[len("json") :]
        body = body.strip()

    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return WorkOutcome.failure("unparseable completion", details=text)

    if not isinstance(data, dict) or not isinstance(data.get("success"), bool):
        return WorkOutcome.failure("ambiguous outcome", details=text)

    fields = {k: data.get(k) for k in ("success", "error", "details", "summary", "artifact_url")}
    try:
        return WorkOutcome.model_validate(fields)
    except ValidationError as exc:
        return WorkOutcome.failure("invalid completion outcome", details=f"{exc}\n\n{text}")


def build_completion_service(config: Config) -> CompletionService:
    if not config.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY not set - delegated work will fail until configured")
        return UnavailableCompletionService()
    return AnthropicCompletionService(
        api_key=config.anthropic_api_key, model=config.completion_model
    )
