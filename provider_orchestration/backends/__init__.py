from typing import Dict, Optional
import httpx

from ..core.types import BackendConfig
from .base import BackendAdapter, DEFAULT_SYSTEM_PROMPT
from .gemini import GeminiAdapter, GEMINI
from .openai import OpenAICompatibleAdapter, OPENAI, NVIDIA, DEEPSEEK, QWEN
from .anthropic import AnthropicAdapter, ANTHROPIC

DEFAULT_BACKENDS: Dict[str, BackendConfig] = {
    b.name: b for b in (GEMINI, OPENAI, NVIDIA, ANTHROPIC, DEEPSEEK, QWEN)
}

ADAPTER_CLASSES = {
    'gemini': GeminiAdapter,
    'openai': OpenAICompatibleAdapter,
    'nvidia': OpenAICompatibleAdapter,
    'anthropic': AnthropicAdapter,
    'deepseek': OpenAICompatibleAdapter,
    'qwen': OpenAICompatibleAdapter,
}


def build_adapter(config: BackendConfig, client: Optional[httpx.AsyncClient] = None, timeout: float = 60.0) -> BackendAdapter:
    adapter_cls = ADAPTER_CLASSES.get(config.name, OpenAICompatibleAdapter)
    return adapter_cls(config, client=client, timeout=timeout)


__all__ = [
    'BackendAdapter',
    'DEFAULT_SYSTEM_PROMPT',
    'DEFAULT_BACKENDS',
    'GeminiAdapter',
    'OpenAICompatibleAdapter',
    'AnthropicAdapter',
    'build_adapter',
]
