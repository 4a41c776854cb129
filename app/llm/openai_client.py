from typing import Any

from openai import OpenAI

from app.llm.llm_client import LLMClient


class OpenAIClient(LLMClient):
    def __init__(self, model_name: str, temperature: float = 0.0, max_tokens: int = 8000):
        self.model_name = model_name
        self.temperature = temperature
        self.max_tokens = max_tokens
        # Liest OPENAI_API_KEY automatisch aus der Umgebung
        self.client = OpenAI()

    def complete(self, prompt: str, **kwargs: Any) -> str:
        response = self.client.chat.completions.create(
            model=self.model_name,
            messages=[{"role": "user", "content": prompt}],
            temperature=kwargs.get("temperature", self.temperature),
            max_tokens=kwargs.get("max_tokens", self.max_tokens),
        )

        return response.choices[0].message.content or ""
