"""
Prompt templates for the summarization engine.

Templates are plain text files next to this module so they can be tuned
without code changes; placeholders use str.format syntax.
"""

from __future__ import annotations

from pathlib import Path

PROMPTS_DIR = Path(__file__).parent


class PromptLoader:
    """Load and cache prompt templates from files"""

    def __init__(self, prompts_dir: Path = PROMPTS_DIR):
        self.prompts_dir = prompts_dir
        self._cache: dict[str, str] = {}

    def load_prompt(self, prompt_name: str) -> str:
        """
        Load a prompt template by name (file name without .txt).

        Raises:
            FileNotFoundError: If the template does not exist
        """
        if prompt_name not in self._cache:
            prompt_path = self.prompts_dir / f"{prompt_name}.txt"
            if not prompt_path.exists():
                raise FileNotFoundError(f"Prompt file not found: {prompt_path}")
            self._cache[prompt_name] = prompt_path.read_text(encoding="utf-8")
        return self._cache[prompt_name]

    def render(self, prompt_name: str, **kwargs: object) -> str:
        return self.load_prompt(prompt_name).format(**kwargs)


_loader = PromptLoader()


def get_loader() -> PromptLoader:
    return _loader
