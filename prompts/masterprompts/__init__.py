"""Evaluator master prompts, one JSON file per output language."""
from __future__ import annotations

import json
import string
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterator, Mapping

_PROMPT_DIR = Path(__file__).resolve().parent
_DEFAULT_LANGUAGE = "en"

_FIELDS = (
    "id",
    "variant",
    "prompt_version",
    "label",
    "description",
    "system_template",
    "json_instructions",
)

# Every evaluator template must consume exactly these values.
PLACEHOLDERS = frozenset(
    {
        "case_text",
        "case_solution_block",
        "turn",
        "max_turns",
        "fifty_plus_one",
        "skills_text",
        "sources_text",
        "transcript",
    }
)


@dataclass(frozen=True)
class MasterPrompt:
    """System prompt template plus the JSON reply contract sent to the evaluator."""

    id: str
    variant: str
    prompt_version: str
    label: str
    description: str
    system_template: str
    json_instructions: str

    @property
    def language(self) -> str:
        return self.variant.lower()

    def render(self, **values: object) -> str:
        return self.system_template.format(**values) + "\n\n" + self.json_instructions.format()


def _template_fields(template: str) -> set[str]:
    return {name for _, name, _, _ in string.Formatter().parse(template) if name}


def _read(path: Path) -> MasterPrompt:
    payload = json.loads(path.read_text(encoding="utf-8"))
    missing = [key for key in _FIELDS if key not in payload]
    if missing:
        raise ValueError(f"Prompt file {path.name} missing keys: {', '.join(missing)}")
    prompt = MasterPrompt(**{key: str(payload[key]) for key in _FIELDS})

    found = _template_fields(prompt.system_template)
    if found != PLACEHOLDERS:
        unknown = sorted(found - PLACEHOLDERS)
        absent = sorted(PLACEHOLDERS - found)
        raise ValueError(f"Prompt file {path.name} placeholders differ: unknown={unknown} missing={absent}")
    if _template_fields(prompt.json_instructions):
        raise ValueError(f"Prompt file {path.name}: json_instructions must not contain placeholders")
    return prompt


def _prompt_files(directory: Path) -> Iterator[Path]:
    yield from (path for path in sorted(directory.glob("*.json")) if path.is_file())


@lru_cache(maxsize=4)
def load_prompts(directory: Path | None = None) -> Mapping[str, MasterPrompt]:
    """Prompts of ``directory`` keyed by language; one file per language."""
    base_dir = Path(directory) if directory else _PROMPT_DIR
    prompts: Dict[str, MasterPrompt] = {}
    for path in _prompt_files(base_dir):
        prompt = _read(path)
        if prompt.language in prompts:
            raise ValueError(f"Duplicate master prompt language: {prompt.variant}")
        prompts[prompt.language] = prompt
    if not prompts:
        raise RuntimeError(f"No master prompt definitions found in {base_dir}")
    return prompts


def get_prompt(language: str | None) -> MasterPrompt:
    """Prompt for an output language; English when the language has no prompt."""
    prompts = load_prompts()
    key = str(language or _DEFAULT_LANGUAGE).lower()
    if key in prompts:
        return prompts[key]
    return prompts.get(_DEFAULT_LANGUAGE) or next(iter(prompts.values()))


__all__ = ["MasterPrompt", "PLACEHOLDERS", "load_prompts", "get_prompt"]
