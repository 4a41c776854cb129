import re
from typing import Any

from app.llm.llm_client import LLMClient

_CHAPTER_TEXT = re.compile(r"### CHAPTER TEXT\n(.*?)\n\n(?:Rules:|Return ONLY)", re.DOTALL)


class FakeLLMClient(LLMClient):
    """
    Deterministischer Client für TEST_MODE.

    Review-Prompts bekommen eine Freigabe ohne Issues, Rewrite-Prompts den
    Kapiteltext mit einer markierten Zeile zurück, Patch-Prompts keine Patches.
    """

    def complete(self, prompt: str, **kwargs: Any) -> str:
        if prompt.startswith("You are a demanding senior editor"):
            return """
            {
              "score": 9.5,
              "verdict": "approved",
              "issues": [],
              "units_to_rewrite": []
            }
            """
        if '"patches"' in prompt:
            return '{"patches": []}'

        m = _CHAPTER_TEXT.search(prompt)
        content = m.group(1).strip() if m else ""
        return f"{content}\n\n[revised]"
