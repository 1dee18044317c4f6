import asyncio
import logging
import time
from datetime import datetime

import ollama

from courier.core.prompts import get_system_prompt
from courier.memory.context_builder import render

log = logging.getLogger(__name__)


def build_messages(request, context):
    # 1. Static system prompt (maximizes KV cache hit rate across requests)
    messages = [{"role": "system", "content": get_system_prompt()}]

    # 2. Volatile context injected right before the user's message
    volatile_context = f"""[System context updated for this request]
Current time: {datetime.now().strftime('%A, %B %d, %Y at %I:%M %p')}
Agent: {request.agent_id}

--- USER CONTEXT ---
{render(context)}
--- END CONTEXT ---"""

    messages.append({"role": "system", "content": volatile_context})
    messages.append({"role": "user", "content": request.content})
    return messages


class OllamaResponder:
    """Asks a local Ollama model for the response text."""

    def __init__(self, model, host=None, client=None):
        self.model = model
        self.client = client or ollama.Client(host=host)

    def _chat(self, messages):
        response = self.client.chat(model=self.model, messages=messages)
        return response["message"]["content"]

    async def __call__(self, request, context):
        start = time.time()
        text = await asyncio.to_thread(self._chat, build_messages(request, context))
        latency_ms = int((time.time() - start) * 1000)
        log.info(f"[agent] {request.id} llm:{latency_ms}ms | {request.content[:50]!r} -> {text[:50]!r}")
        return text
