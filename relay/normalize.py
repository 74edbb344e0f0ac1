# relay/normalize.py
from __future__ import annotations
import math
from typing import Any, Iterable, List, Optional

from relay.models import AgentSpec, DataEntry, DataSource, DataType, Demo, unique_id

MIN_AGENTS = 2
MAX_AGENTS = 6
DEFAULT_MAX_AGENTS = 5
MAX_SUGGESTED_INPUTS = 3

INPUT_PREVIEW_CHARS = 420
DATA_ENTRY_CHARS = 600
CONTEXT_CHARS = 800

DEFAULT_INSTRUCTION = "Deliver the next actionable step."
NO_DATA_MESSAGE = "User did not attach additional datasets."
ELLIPSIS = "..."


def truncate(text: Optional[str], max_chars: int) -> str:
    if not text:
        return ""
    if len(text) <= max_chars:
        return text
    return text[: max_chars - len(ELLIPSIS)] + ELLIPSIS


def _clean(value: Any) -> str:
    """Trimmed string value; anything that is not a string counts as absent."""
    return value.strip() if isinstance(value, str) else ""


def clamp_max_agents(value: Any, fallback: int = DEFAULT_MAX_AGENTS) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        return fallback
    return min(max(n, MIN_AGENTS), MAX_AGENTS)


def normalize_plan(raw: Any, max_agents: int) -> List[AgentSpec]:
    """
    Bound an untrusted planner value to at most `max_agents` agent specs.
    Non-list input yields an empty plan; missing fields are defaulted, never rejected.
    """
    if not isinstance(raw, list):
        return []
    items = [item for item in raw if isinstance(item, dict)][:max_agents]
    plan: List[AgentSpec] = []
    for index, item in enumerate(items, start=1):
        instruction = _clean(item.get("systemInstruction")) or DEFAULT_INSTRUCTION
        plan.append(AgentSpec(
            agent_name=_clean(item.get("agentName")) or f"Agent {index}",
            system_instruction=instruction,
            initial_task=_clean(item.get("initialTask")) or instruction,
        ))
    return plan


def sanitize_input_type(value: Any) -> DataType:
    lower = str(value if value is not None else "").strip().lower()
    try:
        return DataType(lower)
    except ValueError:
        return DataType.TEXT


def normalize_inputs(raw: Any, demo: Optional[Demo]) -> List[DataEntry]:
    """Up to three architect-suggested inputs, or the demo's own inputs when none are usable."""
    if not isinstance(raw, list) or not raw:
        return [entry.model_copy(update={"id": entry.id or unique_id("input")})
                for entry in (demo.inputs if demo else [])]
    problem = demo.problem if demo else ""
    items = [item for item in raw if isinstance(item, dict)][:MAX_SUGGESTED_INPUTS]
    entries: List[DataEntry] = []
    for index, item in enumerate(items, start=1):
        content = next(
            (_clean(item.get(key)) for key in ("sample", "content", "example") if _clean(item.get(key))),
            problem.strip(),
        )
        entries.append(DataEntry(
            title=_clean(item.get("title")) or f"Input {index}",
            type=sanitize_input_type(item.get("type")),
            content=content,
            source=DataSource.SUGGESTED,
        ))
    return entries


def infer_type_from_name(name: str) -> DataType:
    lower = (name or "").lower()
    if lower.endswith(".csv"):
        return DataType.CSV
    if lower.endswith(".json"):
        return DataType.JSON
    return DataType.TEXT


def format_data_entries(entries: Iterable[DataEntry]) -> str:
    blocks = [
        f"{idx}. {entry.title} [{entry.type.value}]\n{truncate(entry.content, DATA_ENTRY_CHARS)}"
        for idx, entry in enumerate(entries, start=1)
    ]
    return "\n\n".join(blocks) if blocks else NO_DATA_MESSAGE


def format_bytes(size: int) -> str:
    if not size:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    exp = min(int(math.log(size) / math.log(1024)), len(units) - 1)
    return f"{size / 1024 ** exp:.1f} {units[exp]}"
