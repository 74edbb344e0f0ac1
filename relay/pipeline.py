# relay/pipeline.py
"""
Plan-then-execute pipeline.

One architect call turns a problem statement into an ordered list of agents;
the agents then run one after another, each streaming its answer and handing
the trimmed result to the next as rolling context.

Stages: idle -> architect -> data -> run -> idle. Any failure in architect or
run lands back in idle with the error message set. The runner owns a single
PipelineState and replaces it on every transition; subscribers receive each
new snapshot, including one per streamed token.
"""
from __future__ import annotations
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from relay.errors import PipelineBusyError
from relay.graph import build_run_graph, recursion_limit
from relay.models import (
    AgentExecution, AgentSpec, AgentStatus, Catalog, DataEntry, DataSource,
    Demo, EndpointConfig, PipelineState, Stage, unique_id,
)
from relay.nodes.llm import require_endpoint, stream_chat_completion
from relay.normalize import (
    clamp_max_agents, format_bytes, infer_type_from_name, normalize_inputs,
    normalize_plan,
)
from relay.prompts import agent_messages, architect_messages
from relay.stream import parse_lenient

logger = logging.getLogger(__name__)

Listener = Callable[[PipelineState], None]
Completion = Callable[..., Awaitable[None]]

NO_DATA_ERROR = "Select or add at least one dataset before running agents."
NOT_READY_ERROR = "Plan a problem before running agents."
NO_PLAN_ERROR = "The architect plan has no agents to run."
NO_PROBLEM_ERROR = "Enter a custom problem statement before running."
BUSY_ERROR = "The pipeline is already running."


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class PipelineRunner:
    def __init__(
        self,
        catalog: Catalog,
        endpoint: Optional[EndpointConfig] = None,
        model: Optional[str] = None,
        architect_prompt: Optional[str] = None,
        agent_style: Optional[str] = None,
        max_agents: Any = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        complete: Completion = stream_chat_completion,
    ):
        self.catalog = catalog
        self.endpoint = endpoint
        defaults = catalog.defaults
        self.model = (model or defaults.model or "gpt-5-mini").strip()
        self.architect_prompt = (architect_prompt or defaults.architect_prompt or "").strip()
        self.agent_style = (agent_style or defaults.agent_style or "").strip()
        self._max_agents = max_agents if max_agents is not None else defaults.max_agents
        self._client = client
        self._timeout = timeout
        self._complete = complete
        self._state = PipelineState()
        self._listeners: List[Listener] = []

    # -----------------------
    # State & observers
    # -----------------------
    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def max_agents(self) -> int:
        return clamp_max_agents(self._max_agents)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, **updates: Any) -> PipelineState:
        self._state = self._state.model_copy(update=updates)
        for listener in list(self._listeners):
            listener(self._state)
        return self._state

    def _guard_idle(self) -> None:
        if self._state.busy:
            raise PipelineBusyError(BUSY_ERROR)

    # -----------------------
    # Problem selection
    # -----------------------
    def select_demo(self, index: int) -> PipelineState:
        self._guard_idle()
        if not 0 <= index < len(self.catalog.demos):
            raise IndexError(f"No demo at index {index}")
        demo = self.catalog.demos[index]
        inputs = tuple(entry.model_copy(update={"id": unique_id("input")}) for entry in demo.inputs)
        return self._begin(index, demo, inputs)

    def select_custom(self, problem: str) -> PipelineState:
        self._guard_idle()
        text = (problem or "").strip()
        if not text:
            return self._publish(error=NO_PROBLEM_ERROR)
        demo = Demo(title="Custom Problem", body="User-supplied brief", problem=text)
        return self._begin(-1, demo, ())

    def _begin(self, index: int, demo: Demo, inputs: tuple) -> PipelineState:
        logger.info("Selected problem %r (index=%d)", demo.title, index)
        return self._publish(
            stage=Stage.ARCHITECT,
            demo_index=index,
            problem=demo,
            plan=(),
            suggested_inputs=inputs,
            selected_input_ids=tuple(entry.id for entry in inputs),
            uploads=(),
            notes="",
            executions=(),
            running_index=None,
            architect_buffer="",
            error="",
        )

    async def plan_demo(self, index: int) -> PipelineState:
        self.select_demo(index)
        return await self.run_architect()

    async def plan_custom(self, problem: str) -> PipelineState:
        state = self.select_custom(problem)
        if state.stage is not Stage.ARCHITECT:
            return state
        return await self.run_architect()

    # -----------------------
    # Architect stage
    # -----------------------
    async def run_architect(self) -> PipelineState:
        demo = self._state.problem
        if demo is None:
            return self._state
        try:
            endpoint = require_endpoint(self.endpoint)
            max_agents = self.max_agents
            body = {
                "model": self.model,
                "messages": architect_messages(self.architect_prompt, max_agents, demo.problem),
            }
            self._publish(stage=Stage.ARCHITECT, plan=(), suggested_inputs=(),
                          selected_input_ids=(), architect_buffer="", error="")
            buffer = ""

            def on_token(token: str) -> None:
                nonlocal buffer
                buffer += token
                self._publish(architect_buffer=buffer)

            await self._complete(endpoint, body, on_token, client=self._client, timeout=self._timeout)

            parsed = parse_lenient(buffer)
            if not isinstance(parsed, dict):
                parsed = {}
            plan = normalize_plan(parsed.get("plan"), max_agents)
            inputs = normalize_inputs(parsed.get("inputs"), demo)
            logger.info("Architect produced %d agents and %d inputs", len(plan), len(inputs))
            return self._publish(
                stage=Stage.DATA,
                plan=tuple(plan),
                suggested_inputs=tuple(inputs),
                selected_input_ids=tuple(entry.id for entry in inputs),
                architect_buffer=buffer,
            )
        except Exception as exc:
            logger.warning("Architect stage failed: %s", exc)
            return self._publish(stage=Stage.IDLE, running_index=None, error=_error_message(exc))

    # -----------------------
    # Data inputs (rejected while architect or run is streaming)
    # -----------------------
    def toggle_input(self, input_id: str) -> PipelineState:
        self._guard_idle()
        if input_id not in {entry.id for entry in self._state.suggested_inputs}:
            raise KeyError(f"Unknown input {input_id}")
        selected = list(self._state.selected_input_ids)
        if input_id in selected:
            selected.remove(input_id)
        else:
            selected.append(input_id)
        return self._publish(selected_input_ids=tuple(selected))

    def add_upload(self, title: str, content: str, size: Optional[int] = None) -> DataEntry:
        self._guard_idle()
        entry = DataEntry(
            id=unique_id("upload"),
            title=title,
            type=infer_type_from_name(title),
            content=content or "",
            source=DataSource.UPLOAD,
            size=size if size is not None else len((content or "").encode("utf-8")),
        )
        self._publish(uploads=self._state.uploads + (entry,))
        logger.info("Attached upload %r (%s)", title, format_bytes(entry.size))
        return entry

    def remove_upload(self, upload_id: str) -> PipelineState:
        self._guard_idle()
        return self._publish(uploads=tuple(u for u in self._state.uploads if u.id != upload_id))

    def set_notes(self, notes: str) -> PipelineState:
        self._guard_idle()
        return self._publish(notes=notes or "")

    def collect_data_entries(self) -> List[DataEntry]:
        """Selected suggestions, then uploads, then the inline notes when present."""
        state = self._state
        selected = set(state.selected_input_ids)
        entries = [entry for entry in state.suggested_inputs if entry.id in selected]
        entries.extend(state.uploads)
        note = state.notes.strip()
        if note:
            entries.append(DataEntry(id=unique_id("note"), title="User Notes",
                                     content=note, source=DataSource.NOTES))
        return entries

    # -----------------------
    # Run stage
    # -----------------------
    def prepare_run(self) -> Optional[List[DataEntry]]:
        """
        Validate and enter the run stage. Returns the data entries to run with,
        or None when the run cannot start (the reason is set on the state).
        """
        self._guard_idle()
        if self._state.stage is not Stage.DATA or self._state.problem is None:
            self._publish(error=NOT_READY_ERROR)
            return None
        if not self._state.plan:
            self._publish(error=NO_PLAN_ERROR)
            return None
        entries = self.collect_data_entries()
        if not entries:
            self._publish(error=NO_DATA_ERROR)
            return None
        try:
            require_endpoint(self.endpoint)
        except Exception as exc:
            self._publish(stage=Stage.IDLE, running_index=None, error=_error_message(exc))
            return None
        self._publish(stage=Stage.RUN, executions=(), running_index=None, error="")
        return entries

    async def run_agents(self, entries: List[DataEntry]) -> PipelineState:
        plan = list(self._state.plan)
        graph = build_run_graph(self._run_agent)
        try:
            await graph.ainvoke(
                {"plan": plan, "entries": list(entries)},
                config={"recursion_limit": recursion_limit(len(plan))},
            )
        except Exception as exc:
            logger.warning("Run stage aborted: %s", exc)
            return self._publish(stage=Stage.IDLE, running_index=None, error=_error_message(exc))
        logger.info("Run stage finished %d agents", len(plan))
        return self._publish(stage=Stage.IDLE, running_index=None)

    async def start_agents(self) -> PipelineState:
        entries = self.prepare_run()
        if entries is None:
            return self._state
        return await self.run_agents(entries)

    async def _run_agent(self, index: int, agent: AgentSpec, input_blob: str, context: str) -> str:
        execution = AgentExecution(
            id=unique_id("agent"),
            name=agent.agent_name,
            task=agent.initial_task,
            instruction=agent.system_instruction,
        )
        self._publish(executions=self._state.executions + (execution,), running_index=index)
        logger.info("Agent %d/%d %r started", index + 1, len(self._state.plan), agent.agent_name)

        body: Dict[str, Any] = {
            "model": self.model,
            "messages": agent_messages(agent, self.agent_style, self._state.problem.problem,
                                       input_blob, context),
        }
        text = ""

        def on_token(token: str) -> None:
            nonlocal text
            text += token
            self._update_execution(execution.id, text, AgentStatus.RUNNING)

        try:
            await self._complete(self.endpoint, body, on_token, client=self._client, timeout=self._timeout)
        except Exception:
            self._update_execution(execution.id, text, AgentStatus.ERROR)
            raise
        self._update_execution(execution.id, text, AgentStatus.DONE)
        return text.strip() or context

    def _update_execution(self, execution_id: str, text: str, status: AgentStatus) -> None:
        self._publish(executions=tuple(
            e.model_copy(update={"text": text, "status": status}) if e.id == execution_id else e
            for e in self._state.executions
        ))
