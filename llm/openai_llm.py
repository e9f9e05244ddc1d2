import logging
from typing import Optional

from openai import OpenAI

from errors import ConfigurationMissing
from .base import LLM

LOGGER = logging.getLogger(__name__)


class AgentServiceLLM(LLM):
    """OpenAI-compatible chat endpoint serving the SQL converter agent."""

    def __init__(self, base_url: str, api_key: str, agent_name: str = "sql-converter",
                 timeout_s: float = 30.0):
        # Validate config with clear errors
        missing = [k for k, v in {
            "AGENT_BASE_URL": base_url,
            "AGENT_API_KEY": api_key,
        }.items() if not v]
        if missing:
            raise ConfigurationMissing(f"Missing required agent setting(s): {', '.join(missing)}")

        # the SDK sends `Authorization: Bearer <api_key>`; retries belong to AgentClient
        self.client = OpenAI(
            base_url=base_url,
            api_key=api_key,
            max_retries=0,
            timeout=timeout_s,
        )
        self.agent_name = agent_name

    def complete(self, prompt: str, *, system: str, context: Optional[str] = None, **kwargs) -> str:
        messages = [{"role": "system", "content": system}]
        if context:
            messages.append({"role": "system", "content": f"Context:\n{context}"})
        messages.append({"role": "user", "content": prompt})

        extra = {}
        if kwargs.get("structured"):
            extra["response_format"] = {"type": "json_object"}

        resp = self.client.chat.completions.create(
            model=self.agent_name,
            messages=messages,
            temperature=kwargs.get("temperature", 0),
            **extra,
        )
        content = resp.choices[0].message.content or ""
        LOGGER.debug("[agent] reply_len=%d", len(content))
        return content.strip()
