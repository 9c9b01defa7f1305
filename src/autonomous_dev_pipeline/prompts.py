"""Prompt template loading.

Templates are markdown files with ``str.format`` placeholders. A project can
override any template by placing a file with the same name under
``<state_dir>/prompts/``.
"""

from pathlib import Path
from typing import Any, Optional


PACKAGE_PROMPTS_DIR = Path(__file__).parent / "prompts"


class _BlankMissing(dict):
    """Leaves unknown placeholders empty instead of raising."""

    def __missing__(self, key: str) -> str:
        return ""


class PromptLibrary:
    """Loads and renders stage prompts."""

    def __init__(self, override_dir: Optional[Path] = None):
        self.override_dir = Path(override_dir) if override_dir else None

    def load(self, name: str) -> str:
        """Load a prompt template.

        Args:
            name: Template name (without extension)

        Returns:
            Template content as string

        Raises:
            FileNotFoundError: If template not found
        """
        if self.override_dir:
            local = self.override_dir / f"{name}.md"
            if local.exists():
                return local.read_text(encoding="utf-8")

        packaged = PACKAGE_PROMPTS_DIR / f"{name}.md"
        if packaged.exists():
            return packaged.read_text(encoding="utf-8")

        raise FileNotFoundError(f"Prompt template not found: {name}")

    def render(self, name: str, **variables: Any) -> str:
        """Load a template and fill in its placeholders."""
        return self.load(name).format_map(_BlankMissing(variables))
