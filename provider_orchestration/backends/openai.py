from ..core.types import BackendConfig, Completion
from .base import BackendAdapter

OPENAI = BackendConfig(
    name='openai',
    models=['gpt-3.5-turbo', 'gpt-4', 'gpt-4-turbo'],
    model_prefixes=('gpt', 'o1'),
    base_url='https://api.openai.com/v1'
)

# OpenAI-compatible hosts; each needs <NAME>_API_BASE_URL to be enabled.
NVIDIA = BackendConfig(
    name='nvidia',
    models=['moonshotai/kimi-k2-instruct-0905'],
    model_prefixes=('moonshotai',)
)

DEEPSEEK = BackendConfig(
    name='deepseek',
    models=['deepseek-chat', 'deepseek-coder'],
    model_prefixes=('deepseek',)
)

QWEN = BackendConfig(
    name='qwen',
    models=['qwen-turbo', 'qwen-plus', 'qwen-max'],
    model_prefixes=('qwen',)
)


class OpenAICompatibleAdapter(BackendAdapter):
    async def complete(self, prompt: str, model: str, api_key: str) -> Completion:
        if not self.config.base_url:
            raise ValueError(f"[{self.name}] No base URL configured")

        data = await self._post(
            f"{self.config.base_url.rstrip('/')}/chat/completions",
            payload={
                'model': model,
                'messages': [
                    {'role': 'system', 'content': self.system_prompt},
                    {'role': 'user', 'content': prompt},
                ],
                'temperature': self.temperature,
                'max_tokens': self.max_tokens,
            },
            headers={'Authorization': f"Bearer {api_key}"},
        )

        text = ''
        choices = data.get('choices') or []
        if choices:
            # Some compatible hosts answer in streaming-delta shape even without stream=true
            message = choices[0].get('message') or choices[0].get('delta') or {}
            text = message.get('content') or ''
        tokens = (data.get('usage') or {}).get('total_tokens', len(text))
        return Completion(text=text, tokens=tokens)
