import asyncio
import json

import pytest

from relay.errors import PipelineBusyError, TransportError
from relay.models import (
    AgentStatus, Catalog, DataEntry, DataSource, DataType, Demo, EndpointConfig,
    PipelineDefaults, Stage,
)
from relay.nodes.llm import MISSING_CREDENTIALS
from relay.pipeline import (
    NO_DATA_ERROR, NO_PLAN_ERROR, NO_PROBLEM_ERROR, NOT_READY_ERROR, PipelineRunner,
)

ENDPOINT = EndpointConfig(base_url="https://llm.test/v1", api_key="sk-test")

PLAN = {
    "plan": [
        {"agentName": "Researcher", "systemInstruction": "Research.", "initialTask": "Collect facts"},
        {"agentName": "Analyst", "systemInstruction": "Analyse.", "initialTask": "Find drivers"},
        {"agentName": "Writer", "systemInstruction": "Write.", "initialTask": "Draft report"},
    ],
    "inputs": [{"title": "Sales", "type": "csv", "sample": "month,revenue\njan,10"}],
}


def _catalog(max_agents=4):
    return Catalog(
        demos=[Demo(title="Churn", problem="Why do users churn?",
                    inputs=[DataEntry(title="Survey", content="too pricey")])],
        defaults=PipelineDefaults(model="m-1", architect_prompt="Plan agents.",
                                  agent_style="Be brief.", max_agents=max_agents),
    )


class Scripted:
    """Fake completion: call i streams script[i] tokens then optionally raises."""

    def __init__(self, script):
        self.script = list(script)
        self.bodies = []
        self.hook = None

    async def __call__(self, endpoint, body, on_token, **kwargs):
        self.bodies.append(body)
        tokens, exc = self.script[len(self.bodies) - 1]
        if self.hook:
            self.hook(len(self.bodies) - 1)
        for token in tokens:
            await asyncio.sleep(0)
            on_token(token)
        if exc is not None:
            raise exc


def _architect_tokens(plan=PLAN):
    text = json.dumps(plan)
    return [text[i:i + 7] for i in range(0, len(text), 7)]


def _runner(script, endpoint=ENDPOINT, max_agents=4):
    fake = Scripted(script)
    return PipelineRunner(_catalog(max_agents), endpoint=endpoint, complete=fake), fake


def test_architect_moves_to_data_with_normalized_plan():
    runner, fake = _runner([(_architect_tokens(), None)])
    st = asyncio.run(runner.plan_demo(0))
    assert st.stage is Stage.DATA
    assert [a.agent_name for a in st.plan] == ["Researcher", "Analyst", "Writer"]
    assert [e.title for e in st.suggested_inputs] == ["Sales"]
    assert st.suggested_inputs[0].type is DataType.CSV
    assert st.selected_input_ids == (st.suggested_inputs[0].id,)
    assert st.architect_buffer == json.dumps(PLAN)
    assert st.error == ""

    messages = fake.bodies[0]["messages"]
    assert fake.bodies[0]["model"] == "m-1"
    assert messages[0] == {"role": "system", "content": "Plan agents.\nLimit to <= 4 agents."}
    assert messages[1] == {"role": "user", "content": "Why do users churn?"}


def test_architect_plan_is_bounded_by_max_agents():
    runner, _ = _runner([(_architect_tokens(), None)], max_agents=2)
    st = asyncio.run(runner.plan_demo(0))
    assert len(st.plan) == 2


def test_unparsable_architect_output_yields_empty_plan_and_demo_inputs():
    runner, _ = _runner([(["this is ", "not json"], None)])
    st = asyncio.run(runner.plan_demo(0))
    assert st.stage is Stage.DATA
    assert st.plan == ()
    assert [e.title for e in st.suggested_inputs] == ["Survey"]
    assert st.error == ""

    st = asyncio.run(runner.start_agents())
    assert st.stage is Stage.DATA
    assert st.error == NO_PLAN_ERROR
    assert st.executions == ()


def test_architect_without_credentials_returns_to_idle():
    runner, fake = _runner([], endpoint=None)
    st = asyncio.run(runner.plan_demo(0))
    assert st.stage is Stage.IDLE
    assert st.error == MISSING_CREDENTIALS
    assert st.plan == () and st.executions == ()
    assert fake.bodies == []


def test_architect_transport_error_message_is_preserved():
    err = TransportError(500, "Internal Server Error", "upstream down")
    runner, _ = _runner([(["{"], err)])
    st = asyncio.run(runner.plan_demo(0))
    assert st.stage is Stage.IDLE
    assert st.error == "HTTP 500 Internal Server Error - upstream down"
    assert st.plan == ()


def test_full_run_threads_trimmed_context():
    runner, fake = _runner([
        (_architect_tokens(), None),
        (["  RESULT", "-A  "], None),
        (["   "], None),
        (["final"], None),
    ])
    asyncio.run(runner.plan_demo(0))
    st = asyncio.run(runner.start_agents())

    assert st.stage is Stage.IDLE
    assert st.error == ""
    assert st.running_index is None
    assert [e.status for e in st.executions] == [AgentStatus.DONE] * 3
    assert st.executions[0].text == "  RESULT-A  "

    users = [body["messages"][1]["content"] for body in fake.bodies[1:]]
    blob = "1. Sales [csv]\nmonth,revenue\njan,10"
    assert users[0] == (
        "Problem:\nWhy do users churn?\n\nTask:\nCollect facts\n\n"
        f"Input Data:\n{blob}\n\nPrevious Output:\n{blob}"
    )
    assert users[1].endswith("Previous Output:\nRESULT-A")
    # blank output keeps the previous context
    assert users[2].endswith("Previous Output:\nRESULT-A")
    assert fake.bodies[1]["messages"][0]["content"] == "Research.\nBe brief."


def test_long_context_is_truncated_to_800_chars():
    long_text = "x" * 1000
    runner, fake = _runner([
        (_architect_tokens({"plan": PLAN["plan"][:2], "inputs": PLAN["inputs"]}), None),
        ([long_text], None),
        (["ok"], None),
    ])
    asyncio.run(runner.plan_demo(0))
    asyncio.run(runner.start_agents())
    context = fake.bodies[2]["messages"][1]["content"].split("Previous Output:\n", 1)[1]
    assert len(context) == 800
    assert context == "x" * 797 + "..."


def test_failing_agent_aborts_the_run_and_keeps_partial_output():
    boom = TransportError(502, "Bad Gateway", "model overloaded")
    runner, fake = _runner([
        (_architect_tokens(), None),
        (["first ", "done"], None),
        (["par", "tial"], boom),
        (["never"], None),
    ])
    asyncio.run(runner.plan_demo(0))
    st = asyncio.run(runner.start_agents())

    assert st.stage is Stage.IDLE
    assert st.error == str(boom)
    assert len(st.executions) == 2
    assert st.executions[0].status is AgentStatus.DONE
    assert st.executions[0].text == "first done"
    assert st.executions[1].status is AgentStatus.ERROR
    assert st.executions[1].text == "partial"
    assert len(fake.bodies) == 3


def test_zero_inputs_keep_data_stage():
    runner, fake = _runner([(_architect_tokens(), None)])
    st = asyncio.run(runner.plan_demo(0))
    runner.toggle_input(st.suggested_inputs[0].id)
    runner.set_notes("   ")
    st = asyncio.run(runner.start_agents())
    assert st.stage is Stage.DATA
    assert st.error == NO_DATA_ERROR
    assert st.executions == ()
    assert len(fake.bodies) == 1


def test_collect_data_entries_order_and_notes():
    runner, _ = _runner([(_architect_tokens(), None)])
    asyncio.run(runner.plan_demo(0))
    upload = runner.add_upload("metrics.json", '{"a": 1}')
    runner.set_notes("  churn spiked in june  ")
    entries = runner.collect_data_entries()
    assert [e.title for e in entries] == ["Sales", "metrics.json", "User Notes"]
    assert upload.type is DataType.JSON and upload.source is DataSource.UPLOAD
    assert upload.size == len('{"a": 1}')
    assert entries[2].content == "churn spiked in june"
    assert entries[2].source is DataSource.NOTES

    runner.remove_upload(upload.id)
    assert [e.title for e in runner.collect_data_entries()] == ["Sales", "User Notes"]


def test_run_without_credentials_returns_to_idle():
    runner, fake = _runner([(_architect_tokens(), None)])
    asyncio.run(runner.plan_demo(0))
    runner.endpoint = EndpointConfig(base_url="https://llm.test/v1", api_key="")
    st = asyncio.run(runner.start_agents())
    assert st.stage is Stage.IDLE
    assert st.error == MISSING_CREDENTIALS
    assert st.executions == ()
    assert len(fake.bodies) == 1


def test_single_flight_rejects_overlapping_triggers():
    runner, fake = _runner([(_architect_tokens(), None), (["a"], None), (["b"], None), (["c"], None)])
    rejected = []

    def try_overlap(call_index):
        for trigger in (lambda: runner.select_demo(0), runner.prepare_run, lambda: runner.select_custom("x")):
            try:
                trigger()
            except PipelineBusyError:
                rejected.append(call_index)

    fake.hook = try_overlap
    asyncio.run(runner.plan_demo(0))
    st = asyncio.run(runner.start_agents())
    assert st.stage is Stage.IDLE and st.error == ""
    assert rejected == [0, 0, 0, 1, 1, 1, 2, 2, 2, 3, 3, 3]


def test_blank_custom_problem_sets_error_without_transition():
    runner, fake = _runner([])
    st = asyncio.run(runner.plan_custom("   "))
    assert st.stage is Stage.IDLE
    assert st.error == NO_PROBLEM_ERROR
    assert fake.bodies == []


def test_custom_problem_runs_architect():
    runner, fake = _runner([(_architect_tokens(), None)])
    st = asyncio.run(runner.plan_custom("  Cut cloud costs by 20%  "))
    assert st.stage is Stage.DATA
    assert st.demo_index == -1
    assert st.problem.title == "Custom Problem"
    assert fake.bodies[0]["messages"][1]["content"] == "Cut cloud costs by 20%"


def test_unknown_demo_index_raises():
    runner, _ = _runner([])
    with pytest.raises(IndexError):
        runner.select_demo(5)


def test_observers_see_ordered_snapshots_and_invariants():
    runner, _ = _runner([
        (_architect_tokens(), None),
        (["a", "b", "c"], None),
        (["d", "e"], None),
        (["f"], None),
    ])
    snapshots = []
    unsubscribe = runner.subscribe(snapshots.append)
    asyncio.run(runner.plan_demo(0))
    asyncio.run(runner.start_agents())
    unsubscribe()

    stages = [s.stage for s in snapshots]
    assert stages[0] is Stage.ARCHITECT
    assert stages[-1] is Stage.IDLE
    assert Stage.DATA in stages and Stage.RUN in stages

    buffers = [s.architect_buffer for s in snapshots if s.stage is Stage.ARCHITECT]
    assert all(b.startswith(a) for a, b in zip(buffers, buffers[1:]))

    first_texts = []
    for s in snapshots:
        assert len(s.executions) <= len(s.plan)
        assert sum(e.status is AgentStatus.RUNNING for e in s.executions) <= 1
        if s.executions:
            first_texts.append(s.executions[0].text)
    assert first_texts[:4] == ["", "a", "ab", "abc"]

    count = len(snapshots)
    runner.set_notes("after")
    assert len(snapshots) == count


def test_no_new_executions_after_run_until_next_architect_cycle():
    runner, fake = _runner([
        (_architect_tokens({"plan": PLAN["plan"][:2], "inputs": PLAN["inputs"]}), None),
        (["one"], None), (["two"], None),
    ])
    asyncio.run(runner.plan_demo(0))
    asyncio.run(runner.start_agents())
    st = asyncio.run(runner.start_agents())
    assert st.stage is Stage.IDLE
    assert st.error == NOT_READY_ERROR
    assert [e.text for e in st.executions] == ["one", "two"]
    assert len(fake.bodies) == 3


def test_data_inputs_are_rejected_while_streaming():
    runner, fake = _runner([(_architect_tokens(), None), (["a"], None), (["b"], None), (["c"], None)])
    rejected = []

    def try_edits(call_index):
        input_ids = [e.id for e in runner.state.suggested_inputs] or ["none"]
        edits = (
            lambda: runner.toggle_input(input_ids[0]),
            lambda: runner.add_upload("late.csv", "a,b"),
            lambda: runner.remove_upload("upload-x"),
            lambda: runner.set_notes("injected while busy"),
        )
        for edit in edits:
            try:
                edit()
            except PipelineBusyError:
                rejected.append(call_index)

    fake.hook = try_edits
    snapshots = []
    runner.subscribe(snapshots.append)
    asyncio.run(runner.plan_demo(0))
    st = asyncio.run(runner.start_agents())

    assert rejected == [0] * 4 + [1] * 4 + [2] * 4 + [3] * 4
    assert st.stage is Stage.IDLE and st.error == ""
    assert st.uploads == () and st.notes == ""
    assert all(s.notes == "" and s.uploads == () for s in snapshots)


def test_toggle_unknown_input_raises_and_keeps_selection():
    runner, _ = _runner([(_architect_tokens(), None)])
    st = asyncio.run(runner.plan_demo(0))
    with pytest.raises(KeyError):
        runner.toggle_input("input-missing")
    assert runner.state.selected_input_ids == st.selected_input_ids

    st = runner.toggle_input(st.suggested_inputs[0].id)
    assert st.selected_input_ids == ()
