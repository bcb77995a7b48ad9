"""
Metadata generation with a vision-language model through Pydantic AI.

The generator is called once per job with the image, the user's context hint, the
exclusion list and the model name. It returns ``GeneratedMetadata`` or raises;
the job runner turns any exception into a failed job.
"""

from __future__ import annotations

import asyncio
import os
import time
import urllib.parse
from http import HTTPStatus
from typing import TYPE_CHECKING, Literal

import httpx
from loguru import logger
from pydantic_ai import Agent, AgentRunResult, BinaryContent, ModelSettings
from pydantic_ai.models.google import GoogleModel
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.google import GoogleProvider
from pydantic_ai.providers.ollama import OllamaProvider
from pydantic_ai.providers.openai import OpenAIProvider

from stock_tagger.jobs import GeneratedMetadata


if TYPE_CHECKING:
    from collections.abc import Callable

    from stock_tagger.sources import ImageSource


ProviderName = Literal["google", "ollama", "lmstudio"]

DEFAULT_GOOGLE_API_KEY = os.getenv("GEMINI_API_KEY", os.getenv("GOOGLE_API_KEY"))
DEFAULT_OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434/v1")
DEFAULT_OLLAMA_API_KEY = os.getenv("OLLAMA_API_KEY")
DEFAULT_LMSTUDIO_BASE_URL = os.getenv("LM_STUDIO_BASE_URL", "http://localhost:1234/v1")
DEFAULT_LMSTUDIO_API_KEY = os.getenv("LM_STUDIO_API_KEY", os.getenv("OPENAI_API_KEY"))
DEFAULT_TEMPERATURE = float(os.getenv("TEMPERATURE", "0.3"))
DEFAULT_MAX_TOKENS = int(os.getenv("MAX_TOKENS", "1024"))
DEFAULT_RETRIES = int(os.getenv("RETRIES", "2"))
PROVIDER_URLS = {
    "ollama": DEFAULT_OLLAMA_BASE_URL,
    "lmstudio": DEFAULT_LMSTUDIO_BASE_URL,
}

DEFAULT_SYSTEM_PROMPT = (
    "You are an elite stock photography SEO specialist for Adobe Stock, Shutterstock and "
    "Canva. Your goal is to maximize the findability and click-through rate of each image.\n"
    "\n"
    "Instructions:\n"
    "1. Analyze: identify the main subject, action, lighting and conceptual meaning.\n"
    "2. Prioritize user context: when provided, the context keywords MUST appear in the "
    "title and description.\n"
    "3. Exclude: do NOT use any word from the negative keywords list.\n"
    "\n"
    "Title: [Main subject] + [Action/Context], at most 7-8 words, factual and punchy.\n"
    "Description: 1-2 sentences that naturally include the 3-4 most relevant keywords.\n"
    "Keywords: exactly 45-50 entries, single words or short phrases, lowercase, English "
    "only, sorted strictly by relevance:\n"
    "  - first 5: the most obvious subjects and the user context\n"
    "  - next 10: concepts and emotions (e.g. 'happiness', 'connection')\n"
    "  - next 10: visual descriptors (e.g. 'blue', 'bright', 'copy space')\n"
    "  - remaining: specific details, people attributes and variations"
)

DEFAULT_USER_PROMPT = "Generate stock metadata for this image."


class MissingCredentialError(RuntimeError):
    """Raised when the selected provider has no API key configured."""


def build_user_prompt(context: str, exclusions: str, base_prompt: str = DEFAULT_USER_PROMPT) -> str:
    """
    Combine the base prompt with the user's context and the negative keywords.

    Examples:
        >>> print(build_user_prompt("red bicycle", "car, truck"))
        Generate stock metadata for this image.
        <BLANKLINE>
        Input context (main keywords): "red bicycle"
        Negative keywords (MUST EXCLUDE): "car, truck"

    """
    context_line = context.strip() or "Extract from image content"
    exclusion_line = exclusions.strip() or "None"
    return (
        f"{base_prompt.strip()}\n\n"
        f'Input context (main keywords): "{context_line}"\n'
        f'Negative keywords (MUST EXCLUDE): "{exclusion_line}"'
    )


async def analyze_image_with_ai(
    image_bytes: BinaryContent,
    agent: Agent,
    *,
    user_prompt: str | None = None,
    temperature: float = DEFAULT_TEMPERATURE,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> GeneratedMetadata:
    """
    Generate a title, description and keywords using a vision-language model.

    Args:
        image_bytes: Image data as BinaryContent (JPEG format)
        agent: Configured Pydantic AI Agent
        user_prompt: Optional user prompt with context and negative keywords
        temperature: Sampling temperature for generation (0.0-1.0)
        max_tokens: Maximum tokens to generate in response

    Returns:
        The structured metadata produced by the model

    """
    _t0 = time.perf_counter()
    prompt = user_prompt or DEFAULT_USER_PROMPT

    result: AgentRunResult[GeneratedMetadata] = await agent.run(
        [
            prompt,
            image_bytes,
        ],
        model_settings=ModelSettings(
            temperature=temperature,
            max_tokens=max_tokens,
        ),
        output_type=GeneratedMetadata,
    )
    _elapsed = time.perf_counter() - _t0
    logger.info(
        "ai_inference_completed",
        seconds=round(_elapsed, 3),
        keywords=len(result.output.keywords),
    )
    logger.debug(
        "ai_generated_metadata",
        title=result.output.title,
        description=result.output.description,
        keywords=result.output.keywords,
    )
    return result.output


class MetadataGenerator:
    """
    Callable generator bound to an agent factory.

    Agents are created lazily per model name, so a settings change between runs
    picks up the new model without rebuilding the generator.
    """

    def __init__(
        self,
        agent_factory: Callable[[str], Agent],
        *,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        self._agent_factory = agent_factory
        self._agents: dict[str, Agent] = {}
        self._temperature = temperature
        self._max_tokens = max_tokens

    def agent_for(self, model_name: str) -> Agent:
        if model_name not in self._agents:
            self._agents[model_name] = self._agent_factory(model_name)
        return self._agents[model_name]

    async def __call__(
        self,
        source: ImageSource,
        context: str,
        exclusions: str,
        model_hint: str,
    ) -> GeneratedMetadata:
        agent = self.agent_for(model_hint)
        image_bytes = await asyncio.to_thread(source.payload)
        return await analyze_image_with_ai(
            image_bytes,
            agent,
            user_prompt=build_user_prompt(context, exclusions),
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )


def validate_lmstudio_model(api_base_url: str, model_name: str, api_key: str | None) -> None:
    """Fail fast when LM Studio cannot resolve the requested model name."""
    url = urllib.parse.urljoin(api_base_url.rstrip("/") + "/", "models")
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in {"http", "https"}:
        logger.error("lmstudio_model_listing_invalid_scheme", url=url, scheme=parsed.scheme)
        raise SystemExit(1)
    if not parsed.netloc:
        logger.error("lmstudio_model_listing_missing_host", url=url)
        raise SystemExit(1)
    headers = {"Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        response = httpx.get(url, headers=headers, timeout=5.0)
    except httpx.HTTPError as exc:
        logger.error("lmstudio_model_listing_error", error=str(exc), url=url)
        raise SystemExit(1) from exc

    if response.status_code != HTTPStatus.OK:
        logger.error(
            "lmstudio_model_listing_failed",
            status=response.status_code,
            url=url,
            body=response.text,
        )
        raise SystemExit(1)

    try:
        listing = response.json()
    except ValueError as exc:
        logger.error("lmstudio_model_listing_invalid_json", error=str(exc), url=url)
        raise SystemExit(1) from exc

    models = [
        str(entry["id"])
        for entry in listing.get("data", [])
        if isinstance(entry, dict) and "id" in entry
    ]
    if model_name not in models:
        logger.error("lmstudio_model_not_available", requested=model_name, available=models)
        raise SystemExit(1)

    logger.debug("lmstudio_model_validated", model=model_name)


def create_agent(
    model_name: str,
    *,
    provider_name: ProviderName = "google",
    api_base_url: str | None = None,
    api_key: str | None = None,
    retries: int = DEFAULT_RETRIES,
) -> Agent:
    """
    Build a Pydantic AI agent for the given provider and model.

    Raises:
        MissingCredentialError: the Google provider was selected without an API key

    """
    logger.debug("setting_up_llm_agent", provider=provider_name, model=model_name)

    if provider_name == "google":
        resolved_api_key = api_key or DEFAULT_GOOGLE_API_KEY
        if not resolved_api_key:
            msg = "API key is missing. Set GEMINI_API_KEY or pass --api-key."
            raise MissingCredentialError(msg)
        model = GoogleModel(model_name, provider=GoogleProvider(api_key=resolved_api_key))
    else:
        resolved_url = api_base_url or PROVIDER_URLS[provider_name]
        logger.info("provider_url_resolved", provider=provider_name, url=resolved_url)
        if provider_name == "ollama":
            provider = OllamaProvider(
                base_url=resolved_url,
                api_key=api_key or DEFAULT_OLLAMA_API_KEY,
            )
        else:
            resolved_api_key = api_key or DEFAULT_LMSTUDIO_API_KEY
            validate_lmstudio_model(resolved_url, model_name, resolved_api_key)
            provider = OpenAIProvider(base_url=resolved_url, api_key=resolved_api_key)
        model = OpenAIChatModel(model_name=model_name, provider=provider)

    return Agent(
        model,
        output_type=GeneratedMetadata,
        retries=retries,
        system_prompt=DEFAULT_SYSTEM_PROMPT,
    )
