from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import httpx
from loguru import logger

from ..core.types import BackendConfig, Completion

DEFAULT_SYSTEM_PROMPT = 'You are an expert educator specializing in creating high-quality teaching materials.'


class BackendAdapter(ABC):
    """
    One external text-generation service.

    Subclasses build the provider request and read text and token usage
    from the response. HTTP failures are raised as ``httpx.HTTPStatusError``
    so the orchestrator can classify them from ``response.status_code``.
    """
    def __init__(
        self,
        config: BackendConfig,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        temperature: float = 0.7,
        max_tokens: int = 4096
    ):
        self.config = config
        self.client = client
        self.timeout = timeout
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.max_tokens = max_tokens

    @property
    def name(self) -> str:
        return self.config.name

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str], params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        if self.client is not None:
            response = await self.client.post(url, json=payload, headers=headers, params=params)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=headers, params=params)
        response.raise_for_status()
        return response.json()

    @abstractmethod
    async def complete(self, prompt: str, model: str, api_key: str) -> Completion:
        pass

    async def close(self):
        if self.client is not None:
            await self.client.aclose()
            logger.debug(f"[{self.name}] HTTP client closed")
