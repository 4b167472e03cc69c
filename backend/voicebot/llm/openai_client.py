"""
OpenAI chat completion client for bot replies.

Supports:
- Connection pooling for reduced latency
- Agent system prompt plus optional retrieved context
- Token usage reporting for the usage ledger
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

from voicebot.config import settings
from voicebot.errors import ResourceExhausted, UpstreamFailure

if TYPE_CHECKING:
    import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are an AI assistant. Be concise, accurate, and provide answers based only on "
    "the provided context. Keep responses clear. Answer according to the information "
    "given, regardless of topic"
)


@dataclass
class GenerationResult:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""


def build_messages(prompt: str, context: str = "", system_prompt: Optional[str] = None) -> list[dict]:
    """Assemble the chat message list: system prompt, optional context, user text."""
    messages = [{"role": "system", "content": system_prompt or DEFAULT_SYSTEM_PROMPT}]
    if context and context.strip():
        messages.append({
            "role": "system",
            "content": f"Here is the relevant context from the documents:\n\n{context}",
        })
    messages.append({"role": "user", "content": prompt})
    return messages


class OpenAIClient:
    """
    Non-streaming chat completions over a persistent aiohttp session.

    Failures raise UpstreamFailure (ResourceExhausted on HTTP 429).
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ):
        self.api_key = api_key or settings.openai_api_key
        self.model = model or settings.llm_model
        self.max_tokens = max_tokens or settings.llm_max_tokens
        self.temperature = settings.llm_temperature if temperature is None else temperature
        self.base_url = "https://api.openai.com/v1/chat/completions"
        self.organization_id = settings.openai_organization_id

        self._session: Optional['aiohttp.ClientSession'] = None

    async def _get_session(self):
        """Get or create persistent aiohttp session with connection pooling."""
        if self._session is None or self._session.closed:
            import aiohttp

            connector = aiohttp.TCPConnector(
                limit=10,
                ttl_dns_cache=300,
                keepalive_timeout=120,
            )

            timeout = aiohttp.ClientTimeout(
                total=30,
                connect=3,
                sock_read=20
            )

            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout
            )
            logger.info("✅ Created persistent OpenAI session with connection pooling")

        return self._session

    async def close(self):
        """Close persistent session."""
        if self._session and not self._session.closed:
            await self._session.close()
            logger.info("Closed OpenAI persistent session")

    async def generate(
        self,
        prompt: str,
        context: str = "",
        system_prompt: Optional[str] = None,
    ) -> GenerationResult:
        """
        Generate a reply.

        Args:
            prompt: User text
            context: Retrieved document context (may be empty)
            system_prompt: Agent prompt; the default prompt is used when empty

        Returns:
            GenerationResult with text and token usage

        Raises:
            UpstreamFailure: API, network or payload error
        """
        payload = {
            "model": self.model,
            "messages": build_messages(prompt, context, system_prompt),
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "stream": False,
        }

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self.organization_id:
            headers["OpenAI-Organization"] = self.organization_id

        import aiohttp

        try:
            session = await self._get_session()

            async with session.post(self.base_url, headers=headers, json=payload) as response:
                if response.status == 429:
                    raise ResourceExhausted("OpenAI rate limit reached")
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"OpenAI API error {response.status}: {error_text}")
                    raise UpstreamFailure(f"Generation failed with status {response.status}")

                data = await response.json()

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"OpenAI network error: {e}")
            raise UpstreamFailure(f"Generation failed: {e}") from e

        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise UpstreamFailure("Generation returned an unexpected payload") from e

        usage = data.get("usage") or {}
        result = GenerationResult(
            text=text.strip(),
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            model=self.model,
        )
        logger.info(
            f"LLM generation complete: {len(result.text)} chars, "
            f"{result.input_tokens} prompt / {result.output_tokens} completion tokens"
        )
        return result
