"""
Step handlers - map each step type to its execution logic.

Each handler:
- Receives: (step, context)
- Returns: the step result stored under ``{"step": name, "result": ...}``

Handlers raise on failure; the interpreter decides about retries and aborts.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .completion import CompletionClient
from .contracts import AiTaskStep, ApiCallStep, DelayStep, StepDefinition, WebScrapeStep

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    """Capabilities handed to every handler."""

    completion: CompletionClient
    http_client: Optional[httpx.AsyncClient] = None


async def handle_ai_task(step: AiTaskStep, context: StepContext) -> str:
    """Single completion call, returns the completion text."""
    return await context.completion.complete(
        step.prompt, system_prompt=step.system_prompt, model=step.model
    )


async def _send(client: httpx.AsyncClient, step: ApiCallStep) -> httpx.Response:
    kwargs: dict[str, Any] = {"headers": step.headers}
    if step.body is not None:
        kwargs["json"] = step.body
    return await client.request(step.method.upper(), step.url, **kwargs)


async def handle_api_call(step: ApiCallStep, context: StepContext) -> Any:
    """HTTP request node - returns the parsed JSON body."""
    if context.http_client is not None:
        response = await _send(context.http_client, step)
    else:
        async with httpx.AsyncClient() as client:
            response = await _send(client, step)

    response.raise_for_status()

    # Handle non-JSON responses gracefully
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        return response.json()
    return {"status_code": response.status_code, "text": response.text}


async def handle_delay(step: DelayStep, context: StepContext) -> dict[str, int]:
    await asyncio.sleep(step.duration / 1000)
    return {"delayed": step.duration}


async def handle_web_scrape(step: WebScrapeStep, context: StepContext) -> dict[str, Any]:
    # Placeholder; no scraping semantics are defined yet.
    logger.warning(f"web_scrape step '{step.name}' is not implemented")
    return {"message": "Web scraping not yet implemented", "url": step.url}


async def dispatch_step(step: StepDefinition, context: StepContext) -> Any:
    """Run ``step`` with the handler matching its type."""
    match step:
        case AiTaskStep():
            return await handle_ai_task(step, context)
        case ApiCallStep():
            return await handle_api_call(step, context)
        case DelayStep():
            return await handle_delay(step, context)
        case WebScrapeStep():
            return await handle_web_scrape(step, context)
        case _:
            raise TypeError(f"Unknown step type: {type(step).__name__}")
