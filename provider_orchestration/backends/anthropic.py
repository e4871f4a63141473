from ..core.types import BackendConfig, Completion
from .base import BackendAdapter

ANTHROPIC = BackendConfig(
    name='anthropic',
    models=['claude-3-opus-20240229', 'claude-3-sonnet-20240229', 'claude-3-haiku-20240307'],
    model_prefixes=('claude',),
    base_url='https://api.anthropic.com/v1'
)

ANTHROPIC_VERSION = '2023-06-01'


class AnthropicAdapter(BackendAdapter):
    async def complete(self, prompt: str, model: str, api_key: str) -> Completion:
        base_url = (self.config.base_url or ANTHROPIC.base_url).rstrip('/')
        data = await self._post(
            f"{base_url}/messages",
            payload={
                'model': model,
                'max_tokens': self.max_tokens,
                'system': self.system_prompt,
                'messages': [{'role': 'user', 'content': prompt}],
            },
            headers={'x-api-key': api_key, 'anthropic-version': ANTHROPIC_VERSION},
        )

        blocks = data.get('content') or []
        text = ''.join(b.get('text', '') for b in blocks if b.get('type') == 'text')
        usage = data.get('usage') or {}
        tokens = usage.get('input_tokens', 0) + usage.get('output_tokens', 0) if usage else len(text)
        return Completion(text=text, tokens=tokens)
