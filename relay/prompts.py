# relay/prompts.py
from __future__ import annotations
from typing import Dict, List

from jinja2 import Template

from relay.models import AgentSpec
from relay.normalize import CONTEXT_CHARS, truncate

ARCHITECT_SYSTEM = Template("{{ prompt }}\nLimit to <= {{ max_agents }} agents.")

AGENT_SYSTEM = Template("{{ instruction }}\n{{ style }}")

AGENT_USER = Template(
    "Problem:\n{{ problem }}\n\n"
    "Task:\n{{ task }}\n\n"
    "Input Data:\n{{ input_blob }}\n\n"
    "Previous Output:\n{{ context }}"
)


def architect_messages(architect_prompt: str, max_agents: int, problem: str) -> List[Dict[str, str]]:
    system = ARCHITECT_SYSTEM.render(prompt=architect_prompt, max_agents=max_agents).strip()
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": problem},
    ]


def agent_messages(agent: AgentSpec, agent_style: str, problem: str,
                   input_blob: str, context: str) -> List[Dict[str, str]]:
    """System = instruction + style; user = problem, task, data blob and the truncated rolling context."""
    system = AGENT_SYSTEM.render(instruction=agent.system_instruction, style=agent_style).strip()
    user = AGENT_USER.render(
        problem=problem,
        task=agent.initial_task,
        input_blob=input_blob,
        context=truncate(context, CONTEXT_CHARS),
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]
