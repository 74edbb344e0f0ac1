# relay/graph.py
from __future__ import annotations
from typing import Any, Awaitable, Callable, Dict, List, TypedDict

from langgraph.graph import StateGraph, END

from relay.models import AgentSpec, DataEntry
from relay.normalize import format_data_entries

# (index, agent, input_blob, context) -> next context
AgentStep = Callable[[int, AgentSpec, str, str], Awaitable[str]]


# -----------------------
# State & helpers
# -----------------------
class RunState(TypedDict, total=False):
    """
    State threaded through the run graph.
      - plan: List[AgentSpec]          agents in execution order
      - entries: List[DataEntry]       selected data entries
      - input_blob: str                formatted entries, shared by every agent
      - context: str                   rolling context handed to the next agent
      - index: int                     next agent to run
    """
    plan: List[AgentSpec]
    entries: List[DataEntry]
    input_blob: str
    context: str
    index: int


def _next_step(state: RunState) -> str:
    return "agent" if state.get("index", 0) < len(state.get("plan") or []) else "end"


def recursion_limit(plan_len: int) -> int:
    # one superstep for prepare, one per agent, plus headroom
    return plan_len + 5


# -----------------------
# Build the run graph
# -----------------------
def build_run_graph(step: AgentStep):
    """
    prepare -> agent -> agent -> ... -> END

    `step` runs a single agent and returns the context for the next one. Any
    exception it raises ends the graph run and propagates to the caller.
    """

    async def prepare_node(state: RunState) -> Dict[str, Any]:
        blob = format_data_entries(state.get("entries") or [])
        return {"input_blob": blob, "context": blob, "index": 0}

    async def agent_node(state: RunState) -> Dict[str, Any]:
        index = state["index"]
        agent = state["plan"][index]
        context = await step(index, agent, state["input_blob"], state["context"])
        return {"context": context, "index": index + 1}

    g = StateGraph(RunState)
    g.add_node("prepare", prepare_node)
    g.add_node("agent", agent_node)

    g.set_entry_point("prepare")
    g.add_conditional_edges("prepare", _next_step, {"agent": "agent", "end": END})
    g.add_conditional_edges("agent", _next_step, {"agent": "agent", "end": END})
    return g.compile()
