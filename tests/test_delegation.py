"""
Tests for delegation: flow registry, flow runner, call_flow and the
supervisor/planner/implementer setup.
"""

import asyncio

import pytest

from conftest import HangingLLM, ScriptedLLM, call
from turngraph.delegation.call_flow import CALL_FLOW, CallFlowTool
from turngraph.delegation.plan_execute import (
    IMPLEMENTER_FLOW,
    IMPLEMENTER_GATE_MESSAGE,
    PLANNER_FLOW,
    PLANNER_GATE_MESSAGE,
    build_plan_execute_engine,
    implementer_seed,
    planner_seed,
    supervisor_gate,
)
from turngraph.delegation.registry import FlowDefinition, FlowRegistry
from turngraph.delegation.runner import FlowRunner
from turngraph.errors import ContextOverflowError, FlowNotFoundError, TurnCancelledError
from turngraph.graph.engine import TurnEngine
from turngraph.graph.nodes import CaptureResult
from turngraph.graph.patches import set_patch
from turngraph.graph.state import ExecutionState, TurnStatus
from turngraph.tools.base import ToolContext
from turngraph.tools.builtin import create_default_registry


def contents(messages):
    return [m.content for m in messages]


def writer_flow(llm, key="plan") -> TurnEngine:
    """A flow that stores its final answer under ``key``."""

    def capture(state, output):
        return CaptureResult(patches=[set_patch(key, output)], output=output)

    return TurnEngine("writer", llm, create_default_registry(), capture_hook=capture)


# =============================================================================
# Registry and runner
# =============================================================================


def test_flow_registry_lookup():
    """Test registering and looking up a flow."""
    flows = FlowRegistry()
    engine = writer_flow(ScriptedLLM())
    flows.register("writer", FlowDefinition("writer", engine, description="Writes"))

    assert flows.lookup("writer").engine is engine
    assert "writer" in flows
    assert len(flows) == 1


def test_flow_registry_rejects_duplicates():
    """Test that a flow id can only be registered once."""
    flows = FlowRegistry()
    flows.register("writer", FlowDefinition("writer", writer_flow(ScriptedLLM())))

    with pytest.raises(ValueError):
        flows.register("writer", FlowDefinition("writer", writer_flow(ScriptedLLM())))


def test_unknown_flow_raises():
    """Test that looking up an unknown flow raises FlowNotFoundError."""
    flows = FlowRegistry()
    flows.register("writer", FlowDefinition("writer", writer_flow(ScriptedLLM())))

    with pytest.raises(FlowNotFoundError) as exc_info:
        flows.lookup("reviewer")

    assert exc_info.value.flow_id == "reviewer"
    assert "writer" in str(exc_info.value)


@pytest.mark.asyncio
async def test_runner_returns_patches_of_finished_flow():
    """Test that a finished flow returns its patches without touching the caller's data."""
    llm = ScriptedLLM(call("final_answer", "c1", answer="step 1, step 2"))
    flows = FlowRegistry()
    flows.register("writer", FlowDefinition("writer", writer_flow(llm)))
    shared = {"task": "t"}

    result = await FlowRunner(flows).run("writer", "plan it", shared=shared)

    assert result.success
    assert result.output == "step 1, step 2"
    assert result.patches == [set_patch("plan", "step 1, step 2")]
    assert shared == {"task": "t"}
    assert contents(llm.calls[0]["messages"]) == ["plan it"]


@pytest.mark.asyncio
async def test_runner_drops_patches_of_failed_flow():
    """Test that a failed flow returns no patches."""
    flows = FlowRegistry()
    flows.register("writer", FlowDefinition("writer", writer_flow(ScriptedLLM(RuntimeError("down")))))

    result = await FlowRunner(flows).run("writer", "plan it")

    assert result.status is TurnStatus.ERROR
    assert result.patches == []
    assert result.error == "down"


@pytest.mark.asyncio
async def test_call_flow_tool_returns_patches():
    """Test that call_flow hands the flow's patches back."""
    flows = FlowRegistry()
    flows.register("writer", FlowDefinition("writer", writer_flow(ScriptedLLM("the plan"))))
    tool = CallFlowTool(FlowRunner(flows))

    result = await tool.invoke({"flowId": "writer", "input": "go"}, ToolContext(shared_data={}))

    assert result.success
    assert result.patches == [set_patch("plan", "the plan")]
    assert "Shared data updated: plan" in result.output
    assert tool.parameters["properties"]["flowId"]["enum"] == ["writer"]


@pytest.mark.asyncio
async def test_call_flow_tool_reports_failed_flow():
    """Test that call_flow reports a failed flow as a tool error."""
    flows = FlowRegistry()
    flows.register("writer", FlowDefinition("writer", writer_flow(ScriptedLLM(RuntimeError("down")))))
    tool = CallFlowTool(FlowRunner(flows))

    result = await tool.invoke({"flowId": "writer"}, ToolContext())

    assert not result.success
    assert "ended with status error" in result.error
    assert result.patches == []


@pytest.mark.asyncio
async def test_call_flow_tool_requires_flow_id():
    """Test that call_flow requires a flowId."""
    tool = CallFlowTool(FlowRunner(FlowRegistry()))

    result = await tool.invoke({}, ToolContext())

    assert not result.success
    assert "flowId" in result.error


# =============================================================================
# Seeds and gate
# =============================================================================


def test_planner_seed_lists_images():
    """Test that the planner seed lists attached images."""
    state = ExecutionState.from_input("task", shared_data={"imagePaths": ["/tmp/ui.png"]})

    seeded = planner_seed(state)

    assert seeded.messages[0].role == "system"
    assert "- /tmp/ui.png" in seeded.messages[0].content
    assert seeded.messages[1].content == "task"


def test_implementer_seed_includes_plan():
    """Test that the implementer seed carries the plan."""
    state = ExecutionState.from_input("task", shared_data={"plan": "1. do it"})

    seeded = implementer_seed(state)

    assert contents(seeded.messages) == ["Plan:\n1. do it", "task"]


def test_gate_injects_instruction_once_per_precondition():
    """Test that each gate instruction is injected only once."""
    state = ExecutionState()

    first = supervisor_gate(state, "done")
    state.metadata.update(first.metadata)
    second = supervisor_gate(state, "done")

    assert first.redirect and second.redirect
    assert contents(first.messages) == [PLANNER_GATE_MESSAGE]
    assert second.messages == []
    assert first.metadata["delegation_required"] == PLANNER_FLOW


def test_gate_finishes_with_shared_output():
    """Test that the gate finishes with the shared output."""
    state = ExecutionState(shared_data={"plan": "p", "output": "the result"})

    result = supervisor_gate(state, "something else")

    assert not result.redirect
    assert result.output == "the result"


# =============================================================================
# Supervisor
# =============================================================================


@pytest.mark.asyncio
async def test_supervisor_delegates_in_order():
    """Premature final_answer is redirected to the planner, then the implementer."""
    llm = ScriptedLLM(
        call("final_answer", "s1", answer="done"),                               # supervisor
        call(CALL_FLOW, "s2", flowId=PLANNER_FLOW, input="build a CLI"),       # supervisor
        call("final_answer", "p1", answer="X"),                                  # planner
        call("final_answer", "s3", answer="done"),                               # supervisor
        call(CALL_FLOW, "s4", flowId=IMPLEMENTER_FLOW, input="build a CLI"),   # supervisor
        call("final_answer", "i1", answer="CLI built"),                          # implementer
        call("final_answer", "s5", answer="ignored"),                            # supervisor
    )
    registry = create_default_registry()
    supervisor = build_plan_execute_engine(llm, registry)

    final = await supervisor.run(ExecutionState.from_input("build a CLI"))

    assert final.status is TurnStatus.FINISHED
    assert final.output == "CLI built"
    assert final.shared_data == {"plan": "X", "output": "CLI built"}

    assert PLANNER_GATE_MESSAGE in contents(llm.calls[1]["messages"])
    assert "planner-flow" in PLANNER_GATE_MESSAGE
    assert IMPLEMENTER_GATE_MESSAGE in contents(llm.calls[4]["messages"])

    planner_call = llm.calls[2]
    assert planner_call["tools"] == ["final_answer"]
    assert contents(planner_call["messages"])[-1] == "build a CLI"

    implementer_messages = contents(llm.calls[5]["messages"])
    assert "Plan:\nX" in implementer_messages

    supervisor_messages = contents(final.messages)
    assert supervisor_messages.count("Plan:\nX") == 1
    assert supervisor_messages.count("Subflow output:\nCLI built") == 1
    assert set(llm.calls[0]["tools"]) == {CALL_FLOW, "ask_user", "final_answer"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "shared, gate_message",
    [
        ({}, PLANNER_GATE_MESSAGE),
        ({"plan": "p"}, IMPLEMENTER_GATE_MESSAGE),
        ({"plan": "p", "output": "   "}, IMPLEMENTER_GATE_MESSAGE),
    ],
)
async def test_supervisor_never_finishes_without_plan_and_output(shared, gate_message):
    """Test that the supervisor cannot finish while plan or output is missing."""
    llm = ScriptedLLM(*[call("final_answer", f"s{i}", answer="done") for i in range(4)])
    supervisor = build_plan_execute_engine(llm, create_default_registry(), max_steps=4)

    final = await supervisor.run(ExecutionState.from_input("task", shared_data=shared))

    assert final.status is TurnStatus.EXHAUSTED
    assert contents(final.messages).count(gate_message) == 1


@pytest.mark.asyncio
async def test_supervisor_with_plan_and_output_finishes_with_output():
    """Test that the supervisor's output is the implementer's output."""
    llm = ScriptedLLM(call("final_answer", "s1", answer="my own words"))
    supervisor = build_plan_execute_engine(llm, create_default_registry())

    final = await supervisor.run(
        ExecutionState.from_input("task", shared_data={"plan": "p", "output": "real output"})
    )

    assert final.status is TurnStatus.FINISHED
    assert final.output == "real output"


@pytest.mark.asyncio
async def test_unregistered_flow_is_fatal():
    """Test that calling an unregistered flow ends the supervisor turn."""
    llm = ScriptedLLM(call(CALL_FLOW, "s1", flowId="reviewer-flow", input="x"))
    supervisor = build_plan_execute_engine(llm, create_default_registry())

    with pytest.raises(FlowNotFoundError) as exc_info:
        await supervisor.run(ExecutionState.from_input("task"))

    assert exc_info.value.flow_id == "reviewer-flow"


@pytest.mark.asyncio
async def test_supervisor_cannot_use_other_tools():
    registry = create_default_registry()
    llm = ScriptedLLM(
        call("file_write", "s1", path="a.txt"),
        call("final_answer", "s2", answer="done"),
    )
    supervisor = build_plan_execute_engine(llm, registry, max_steps=2)

    final = await supervisor.run(ExecutionState.from_input("task"))

    assert final.metadata["tool_policy_violation"]["tool"] == "file_write"
    assert final.status is TurnStatus.EXHAUSTED


@pytest.mark.asyncio
async def test_supervisor_gate_is_repeated_after_resume():
    """Resuming an exhausted supervisor turn gets the gate instruction again."""
    llm = ScriptedLLM(*[call("final_answer", f"s{i}", answer="done") for i in range(2)])
    supervisor = build_plan_execute_engine(llm, create_default_registry(), max_steps=1)

    first = await supervisor.run(ExecutionState.from_input("task"))
    resumed = await supervisor.run(first.reset().add_user_message("try again"))

    assert first.status is TurnStatus.EXHAUSTED
    assert resumed.status is TurnStatus.EXHAUSTED
    assert contents(resumed.messages).count(PLANNER_GATE_MESSAGE) == 2


# =============================================================================
# Fatal errors and cancellation in nested flows
# =============================================================================


def parent_with_writer(child_llm, parent_llm) -> TurnEngine:
    flows = FlowRegistry()
    flows.register("writer", FlowDefinition("writer", writer_flow(child_llm)))
    registry = create_default_registry()
    registry.register(CallFlowTool(FlowRunner(flows)))
    return TurnEngine("parent", parent_llm, registry)


@pytest.mark.asyncio
async def test_child_overflow_reported_by_message_is_fatal_for_parent():
    """The parent must not self-heal around a child's unrecoverable overflow."""
    overflow = RuntimeError("This model's maximum context length is 8192 tokens")
    parent_llm = ScriptedLLM(
        call(CALL_FLOW, "s1", flowId="writer", input="x"),
        call("final_answer", "s2", answer="done"),
    )
    parent = parent_with_writer(ScriptedLLM(overflow), parent_llm)

    with pytest.raises(ContextOverflowError) as exc_info:
        await parent.run(ExecutionState.from_input("task"))

    assert exc_info.value.__cause__ is overflow
    assert len(parent_llm.calls) == 1


@pytest.mark.asyncio
async def test_cancel_interrupts_nested_flow():
    """Cancelling during a child run leaves the parent RUNNING before Execute."""
    cancel = asyncio.Event()
    child_llm = HangingLLM()
    parent = parent_with_writer(child_llm, ScriptedLLM(call(CALL_FLOW, "s1", flowId="writer", input="x")))

    async def cancel_when_started():
        await child_llm.started.wait()
        cancel.set()

    canceller = asyncio.create_task(cancel_when_started())
    with pytest.raises(TurnCancelledError) as exc_info:
        await asyncio.wait_for(
            parent.run(ExecutionState.from_input("task", shared_data={"k": "v"}), cancel_event=cancel),
            timeout=5,
        )
    await canceller

    state = exc_info.value.state
    assert state.status is TurnStatus.RUNNING
    assert [m.role for m in state.messages] == ["user", "assistant"]
    assert state.last_tool_call.name == CALL_FLOW
    assert state.shared_data == {"k": "v"}
