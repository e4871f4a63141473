from ..core.types import BackendConfig, Completion
from .base import BackendAdapter

GEMINI = BackendConfig(
    name='gemini',
    models=['gemini-2.0-flash', 'gemini-2.5-flash', 'gemini-2.5-pro'],
    model_prefixes=('gemini',),
    base_url='https://generativelanguage.googleapis.com/v1beta',
    requests_per_minute=600
)


class GeminiAdapter(BackendAdapter):
    async def complete(self, prompt: str, model: str, api_key: str) -> Completion:
        base_url = (self.config.base_url or GEMINI.base_url).rstrip('/')
        data = await self._post(
            f"{base_url}/models/{model}:generateContent",
            payload={
                'systemInstruction': {'parts': [{'text': self.system_prompt}]},
                'contents': [{'role': 'user', 'parts': [{'text': prompt}]}],
                'generationConfig': {'temperature': self.temperature, 'maxOutputTokens': self.max_tokens},
            },
            headers={'x-goog-api-key': api_key},
        )

        candidates = data.get('candidates') or []
        parts = candidates[0].get('content', {}).get('parts', []) if candidates else []
        text = ''.join(p.get('text', '') for p in parts)
        tokens = (data.get('usageMetadata') or {}).get('totalTokenCount', len(text))
        return Completion(text=text, tokens=tokens)
