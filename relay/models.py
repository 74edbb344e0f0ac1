# relay/models.py
from __future__ import annotations
from enum import Enum
from typing import List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def unique_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


class Stage(str, Enum):
    IDLE = "idle"
    ARCHITECT = "architect"
    DATA = "data"
    RUN = "run"


class AgentStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class DataType(str, Enum):
    TEXT = "text"
    CSV = "csv"
    JSON = "json"


class DataSource(str, Enum):
    SUGGESTED = "suggested"
    UPLOAD = "upload"
    NOTES = "notes"


class AgentSpec(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    agent_name: str = Field(alias="agentName")
    system_instruction: str = Field(alias="systemInstruction")
    initial_task: str = Field(alias="initialTask")


class AgentExecution(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    task: str
    instruction: str
    text: str = ""
    status: AgentStatus = AgentStatus.RUNNING


class DataEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: unique_id("input"))
    title: str
    type: DataType = DataType.TEXT
    content: str = ""
    source: DataSource = DataSource.SUGGESTED
    size: int = 0  # bytes, uploads only


class Demo(BaseModel):
    icon: str = ""
    title: str
    body: str = ""
    problem: str
    inputs: List[DataEntry] = Field(default_factory=list)


class PipelineDefaults(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    model: str = "gpt-5-mini"
    architect_prompt: str = Field("", alias="architectPrompt")
    agent_style: str = Field("", alias="agentStyle")
    max_agents: int = Field(4, alias="maxAgents")


class Catalog(BaseModel):
    demos: List[Demo] = Field(default_factory=list)
    defaults: PipelineDefaults = Field(default_factory=PipelineDefaults)


class EndpointConfig(BaseModel):
    base_url: str = ""
    api_key: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.base_url.strip() and self.api_key.strip())


class PipelineState(BaseModel):
    """
    Snapshot of one session. Never mutated in place: every transition builds a
    new instance with model_copy(update=...).
    """
    model_config = ConfigDict(frozen=True)

    stage: Stage = Stage.IDLE
    demo_index: Optional[int] = None  # -1 for a custom problem
    problem: Optional[Demo] = None
    plan: Tuple[AgentSpec, ...] = ()
    suggested_inputs: Tuple[DataEntry, ...] = ()
    selected_input_ids: Tuple[str, ...] = ()
    uploads: Tuple[DataEntry, ...] = ()
    notes: str = ""
    executions: Tuple[AgentExecution, ...] = ()
    running_index: Optional[int] = None
    architect_buffer: str = ""
    error: str = ""

    @property
    def busy(self) -> bool:
        return self.stage in (Stage.ARCHITECT, Stage.RUN)
