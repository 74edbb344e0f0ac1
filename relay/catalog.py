# relay/catalog.py
from __future__ import annotations
import json
import logging
from pathlib import Path
from typing import Optional

from relay import settings
from relay.models import Catalog, DataEntry, DataType, Demo, PipelineDefaults
from relay.normalize import clamp_max_agents

logger = logging.getLogger(__name__)

DEFAULT_ARCHITECT_PROMPT = (
    "You are an architect that designs small teams of specialist agents. "
    "Break the user's problem into a short sequence of agents where each agent builds on the previous one's output. "
    "Respond with ONLY valid JSON (no markdown) of this shape: "
    '{"plan":[{"agentName":"...","systemInstruction":"...","initialTask":"..."}],'
    '"inputs":[{"title":"...","type":"text|csv|json","sample":"..."}]}. '
    "Suggest at most 3 inputs with realistic sample data."
)

DEFAULT_AGENT_STYLE = "Be concise. Use Markdown headings and bullet points. Quote numbers from the input data."

BUILTIN_DEMOS = [
    Demo(
        icon="bi bi-graph-up",
        title="Churn Diagnosis",
        body="Find why subscribers cancel and propose retention experiments.",
        problem=(
            "Monthly churn on our subscription product rose from 3.1% to 4.6% over two quarters. "
            "Diagnose the likely drivers and propose three retention experiments with success metrics."
        ),
        inputs=[
            DataEntry(
                title="Cohort churn by plan",
                type=DataType.CSV,
                content="plan,month,active,cancelled\nbasic,2024-01,1200,41\nbasic,2024-06,1180,62\n"
                        "pro,2024-01,640,12\npro,2024-06,655,21",
            ),
            DataEntry(
                title="Exit survey excerpts",
                type=DataType.TEXT,
                content="'Too expensive for how often I use it.' 'Missing export to Excel.' "
                        "'Support took three days to answer.'",
            ),
        ],
    ),
    Demo(
        icon="bi bi-truck",
        title="Delivery Route Review",
        body="Audit late deliveries and recommend scheduling changes.",
        problem=(
            "Late deliveries in the north depot doubled after a driver schedule change. "
            "Identify the causes and recommend a revised schedule."
        ),
        inputs=[
            DataEntry(
                title="Late deliveries by shift",
                type=DataType.JSON,
                content='{"early": {"total": 310, "late": 12}, "mid": {"total": 420, "late": 51}, '
                        '"late": {"total": 280, "late": 44}}',
            ),
        ],
    ),
    Demo(
        icon="bi bi-megaphone",
        title="Launch Messaging",
        body="Draft positioning and channel copy for a feature launch.",
        problem=(
            "We are launching offline mode for our note-taking app next month. "
            "Produce positioning, key messages and copy for email, blog and in-app announcements."
        ),
    ),
]


def builtin_catalog() -> Catalog:
    return Catalog(
        demos=[demo.model_copy(deep=True) for demo in BUILTIN_DEMOS],
        defaults=PipelineDefaults(
            model="gpt-5-mini",
            architect_prompt=DEFAULT_ARCHITECT_PROMPT,
            agent_style=DEFAULT_AGENT_STYLE,
            max_agents=4,
        ),
    )


def _apply_env(catalog: Catalog) -> Catalog:
    d = catalog.defaults
    defaults = PipelineDefaults(
        model=settings.DEFAULT_MODEL or d.model,
        architect_prompt=settings.ARCHITECT_PROMPT or d.architect_prompt or DEFAULT_ARCHITECT_PROMPT,
        agent_style=settings.AGENT_STYLE or d.agent_style,
        max_agents=clamp_max_agents(settings.MAX_AGENTS or d.max_agents),
    )
    return catalog.model_copy(update={"defaults": defaults})


def load_catalog(path: Optional[str] = None) -> Catalog:
    """
    Load `{demos: [...], defaults: {...}}` from JSON, falling back to the
    built-in catalog when no path is configured or the file is missing.
    Environment settings win over file defaults.
    """
    path = path or settings.CONFIG_PATH
    if not path:
        return _apply_env(builtin_catalog())
    p = Path(path)
    if not p.exists():
        logger.warning("Catalog %s not found; using the built-in demos", p)
        return _apply_env(builtin_catalog())
    data = json.loads(p.read_text(encoding="utf-8"))
    catalog = Catalog.model_validate(data)
    logger.info("Loaded %d demos from %s", len(catalog.demos), p)
    return _apply_env(catalog)
