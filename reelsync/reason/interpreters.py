"""
Transcript interpreters

Turn transcript text into ExtractedFact items.

- LLMInterpreter asks an OpenAI chat model for a JSON description of the
  characters and tasks discussed, then drops any character the transcript
  never mentions.
- PatternInterpreter uses explicit English/Spanish phrases plus a known
  vocabulary of characters and production tasks.

Both return an empty list when the transcript mentions nothing actionable.
"""

from __future__ import annotations

import asyncio
import json
import re
from abc import ABC, abstractmethod
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from openai import OpenAI
from pydantic import ValidationError as PydanticValidationError

from reelsync.config import settings
from reelsync.errors import ExtractionError
from reelsync.schemas.extraction import ExtractedFact
from reelsync.utils.logging import get_logger

logger = get_logger(__name__, category="extraction")

LLM_CONFIDENCE = 0.95
EXPLICIT_CONFIDENCE = 0.9
VOCABULARY_CONFIDENCE = 0.8

PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"
PROMPT_TEMPLATE_PATH = PROMPTS_DIR / "extraction_prompt.txt"
SYSTEM_PROMPT_PATH = PROMPTS_DIR / "extraction_system_prompt.txt"


@lru_cache()
def _load_prompt_template() -> str:
    """Load extraction prompt template from file."""
    if not PROMPT_TEMPLATE_PATH.exists():
        raise FileNotFoundError(f"Extraction prompt template not found: {PROMPT_TEMPLATE_PATH}")
    return PROMPT_TEMPLATE_PATH.read_text(encoding="utf-8").strip()


@lru_cache()
def _load_system_prompt() -> str:
    """Load extraction system prompt from file."""
    if not SYSTEM_PROMPT_PATH.exists():
        raise FileNotFoundError(f"Extraction system prompt not found: {SYSTEM_PROMPT_PATH}")
    return SYSTEM_PROMPT_PATH.read_text(encoding="utf-8").strip()


def strip_markdown_code_blocks(text: str) -> str:
    """Strip markdown code fences (```json ... ```) around a JSON payload."""
    text = text.strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        text = text[first_newline + 1 :] if first_newline != -1 else text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def strip_trailing_commas(text: str) -> str:
    """Remove trailing commas before closing braces/brackets."""
    return re.sub(r",(\s*[}\]])", r"\1", text)


def parse_json_text(raw_text: str) -> Dict[str, Any]:
    """Parse model output as a JSON object, repairing the usual damage.

    Raises:
        json.JSONDecodeError: the text is not JSON even after cleanup
        ValueError: the JSON is not an object
    """
    cleaned = strip_markdown_code_blocks(raw_text)
    # Drop any chatter around the outermost object
    first, last = cleaned.find("{"), cleaned.rfind("}")
    if first != -1 and last > first:
        cleaned = cleaned[first : last + 1]
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        repaired = strip_trailing_commas(cleaned)
        if repaired == cleaned:
            raise
        data = json.loads(repaired)
    if not isinstance(data, dict):
        raise ValueError("Model output is not a JSON object")
    return data


def _mentions(text: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}\b", text, re.IGNORECASE) is not None


class Interpreter(ABC):
    name: str = "interpreter"

    @abstractmethod
    async def interpret(self, transcript: str) -> List[ExtractedFact]:
        """Facts found in `transcript`; empty when there are none."""


class LLMInterpreter(Interpreter):
    """OpenAI chat completion with a JSON response."""

    name = "llm"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        default_project: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        self.api_key = api_key or settings.openai_api_key
        self.model = model or settings.interpretation_model
        self.default_project = default_project or settings.default_project
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            if not self.api_key:
                raise ExtractionError("OPENAI_API_KEY is required for LLM extraction")
            self._client = OpenAI(api_key=self.api_key, max_retries=0)
        return self._client

    def _call_openai(self, transcript: str) -> str:
        prompt = _load_prompt_template().format(
            default_project=self.default_project, transcript=transcript
        )
        response = self._get_client().chat.completions.create(
            model=self.model,
            temperature=0.1,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": _load_system_prompt()},
                {"role": "user", "content": prompt},
            ],
        )
        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise ExtractionError("OpenAI returned empty extraction content")
        return content

    async def interpret(self, transcript: str) -> List[ExtractedFact]:
        logger.info("Interpreting transcript with %s (%s chars)", self.model, len(transcript))
        try:
            raw = await asyncio.to_thread(self._call_openai, transcript)
        except ExtractionError:
            raise
        except Exception as exc:
            raise ExtractionError(f"LLM extraction failed: {exc}") from exc

        try:
            data = parse_json_text(raw)
        except ValueError as exc:
            logger.debug("Unparseable model output: %s", raw[:500])
            raise ExtractionError(f"Failed to parse JSON from model output: {exc}") from exc

        return self.facts_from_payload(data, transcript)

    def facts_from_payload(self, data: Dict[str, Any], transcript: str) -> List[ExtractedFact]:
        project = str(data.get("project") or "").strip() or self.default_project
        characters = data.get("characters") or []
        if not isinstance(characters, list):
            raise ExtractionError("Model output 'characters' is not a list")

        facts: List[ExtractedFact] = []
        for entry in characters:
            if not isinstance(entry, dict):
                continue
            name = str(entry.get("name") or "").strip()
            if not name:
                continue
            # The model sometimes invents characters that were never said
            if name.lower() not in transcript.lower():
                logger.warning("Dropped character %r: not found in the transcript", name)
                continue

            tasks = entry.get("tasks") or []
            if isinstance(tasks, str):
                tasks = [tasks]
            if not tasks:
                logger.warning("No tasks found for character %s", name)
                continue

            for task in tasks:
                task = str(task or "").strip()
                if not task:
                    continue
                context = str(entry.get("context") or "").strip()
                try:
                    facts.append(
                        ExtractedFact(
                            project=project,
                            character=name,
                            task=task,
                            context=context or f"{task} for character {name}",
                            confidence=LLM_CONFIDENCE,
                        )
                    )
                except PydanticValidationError as exc:
                    logger.warning("Skipped invalid fact for %s: %s", name, exc)

        logger.info("LLM extracted %s character/task combination(s)", len(facts))
        return facts


KNOWN_CHARACTERS = ("tom", "jerry", "mickey", "donald", "goofy", "minnie", "pluto")

KNOWN_TASKS = (
    "blocking",
    "animation",
    "rigging",
    "modeling",
    "texturing",
    "rendering",
    "lighting",
    "effect",
    "efecto",
    "design",
    "diseño",
)

COMMON_WORDS = frozenset(
    {
        "los", "las", "una", "uno", "para", "como", "este", "esta", "del", "que",
        "con", "por", "the", "and", "this", "that", "you", "your", "our", "their",
        "from", "vamos", "hacer", "ahora", "sobre", "cada", "todo", "nada", "algo",
        "alguien", "esto", "de", "el", "la", "a", "an", "for", "is",
    }
)

PROJECT_PATTERNS = (
    re.compile(r"\b(?:project|proyecto|prj)\s*:\s*(\w+)\b", re.IGNORECASE),
    re.compile(r"\b(?:project|proyecto|prj)\s+(\w+)\b", re.IGNORECASE),
)

CHARACTER_PATTERNS = (
    re.compile(r"\b(?:character|personaje|char)\s*:\s*(\w+)\b", re.IGNORECASE),
    re.compile(r"\b(?:character|personaje|char)\s+(\w+)\b", re.IGNORECASE),
    re.compile(r"\bpersonaje\s+(?:de|del|para)\s+(\w+)\b", re.IGNORECASE),
    re.compile(r"\bel\s+personaje\s+(\w+)\b", re.IGNORECASE),
)

TASK_PATTERNS = (
    re.compile(r"\b(?:task|tarea)\s*:\s*(\w+)\b", re.IGNORECASE),
    re.compile(r"\btarea\s+(?:de|para)\s+(\w+)\b", re.IGNORECASE),
    re.compile(r"\brevisión\s+(?:de|del)\s+(\w+)\b", re.IGNORECASE),
    re.compile(r"\baplicar\s+(\w+)\b", re.IGNORECASE),
    re.compile(r"\brevisar\s+(?:el|la)?\s*(\w+)\b", re.IGNORECASE),
)


def _collect(patterns: Sequence[re.Pattern], text: str, found: Dict[str, str]) -> None:
    for pattern in patterns:
        for match in pattern.finditer(text):
            value = match.group(1).strip()
            if value and value.lower() not in COMMON_WORDS:
                found.setdefault(value.lower(), value)


def split_sentences(text: str) -> List[str]:
    return [s.strip() for s in re.split(r"[.!?]+", text) if s.strip()]


def best_context_sentence(sentences: Sequence[str], character: str, task: str) -> str:
    """Shortest sentence naming both, else the first naming either."""
    joint = [s for s in sentences if _mentions(s, character) and _mentions(s, task)]
    if joint:
        return min(joint, key=len)
    for word in (character, task):
        for sentence in sentences:
            if _mentions(sentence, word):
                return sentence
    return ""


class PatternInterpreter(Interpreter):
    """Keyword and phrase matching, no network calls."""

    name = "pattern"

    def __init__(self, default_project: Optional[str] = None):
        self.default_project = default_project or settings.default_project

    async def interpret(self, transcript: str) -> List[ExtractedFact]:
        return self.extract(transcript)

    def extract(self, transcript: str) -> List[ExtractedFact]:
        projects: Dict[str, str] = {}
        explicit_characters: Dict[str, str] = {}
        tasks: Dict[str, str] = {}

        _collect(PROJECT_PATTERNS, transcript, projects)
        _collect(CHARACTER_PATTERNS, transcript, explicit_characters)
        _collect(TASK_PATTERNS, transcript, tasks)

        characters = dict(explicit_characters)
        for name in KNOWN_CHARACTERS:
            if _mentions(transcript, name):
                characters.setdefault(name, name.capitalize())
        for name in KNOWN_TASKS:
            if _mentions(transcript, name):
                tasks.setdefault(name, name.capitalize())

        if not characters or not tasks:
            logger.info(
                "Pattern extraction found %s character(s) and %s task(s), nothing to report",
                len(characters),
                len(tasks),
            )
            return []

        project = next(iter(projects.values()), self.default_project)
        sentences = split_sentences(transcript)
        task_names = list(tasks.values())

        facts: List[ExtractedFact] = []
        for key, character in characters.items():
            mentions = [s for s in sentences if _mentions(s, character)]
            associated = [t for t in task_names if any(_mentions(s, t) for s in mentions)]
            if not associated:
                associated = task_names[:1]

            confidence = EXPLICIT_CONFIDENCE if key in explicit_characters else VOCABULARY_CONFIDENCE
            for task in associated:
                facts.append(
                    ExtractedFact(
                        project=project,
                        character=character,
                        task=task,
                        context=best_context_sentence(sentences, character, task),
                        confidence=confidence,
                    )
                )

        logger.info("Pattern extraction produced %s character/task combination(s)", len(facts))
        return facts
