"""
Builds turn engines from settings and agent definitions.
"""

from typing import Mapping

import structlog

from ..config import Settings, get_settings
from ..context.governor import ContextGovernor, LLMSummarizer
from ..context.store import CompressionStore, JsonFileCompressionStore, SqlCompressionStore
from ..delegation.call_flow import CALL_FLOW, CallFlowTool
from ..delegation.plan_execute import build_plan_execute_engine
from ..delegation.registry import FlowDefinition, FlowRegistry
from ..delegation.runner import FlowRunner
from ..graph.engine import TurnEngine
from ..llm.base import BaseLLM
from ..llm.factory import create_llm, create_summarizer_llm
from ..tools.builtin import create_default_registry
from ..tools.registry import ToolRegistry
from .definition import AgentDefinition

logger = structlog.get_logger()

DEFAULT_AGENT_PROMPT = """You are a helpful agent. Work step by step, use the available tools when
they help, and finish with final_answer once the task is done. If the task is
ambiguous, ask the user with ask_user."""


async def create_compression_store(settings: Settings) -> CompressionStore:
    """Create the configured compression store."""
    if settings.compression_store == "sql":
        return await SqlCompressionStore.from_url(settings.database_url)
    return JsonFileCompressionStore(settings.compression_path)


async def create_governor(
    settings: Settings,
    session_key: str,
    store: CompressionStore | None = None,
    summarizer_llm: BaseLLM | None = None,
) -> ContextGovernor:
    """Create a context governor for one session."""
    if store is None and settings.compression_persist:
        store = await create_compression_store(settings)

    return ContextGovernor(
        summarizer=LLMSummarizer(summarizer_llm or create_summarizer_llm(settings)),
        config=settings.get_compression_config(),
        store=store,
        session_key=session_key,
    )


def _compression_enabled(definition: AgentDefinition | None, settings: Settings) -> bool:
    if definition is not None and definition.compression_enabled is not None:
        return definition.compression_enabled
    return settings.compression_enabled


def _definition_llm(definition: AgentDefinition, settings: Settings, provider: str | None) -> BaseLLM:
    config = settings.get_llm_config(provider=provider, model=definition.model)
    overrides = {}
    if definition.temperature is not None:
        overrides["temperature"] = definition.temperature
    if definition.max_tokens is not None:
        overrides["max_tokens"] = definition.max_tokens
    return create_llm(config.model_copy(update=overrides))


def select_sub_agents(
    definition: AgentDefinition,
    definitions: Mapping[str, AgentDefinition],
) -> list[AgentDefinition]:
    """Sub-agents a main agent may delegate to, in name order."""
    if not definition.is_main_agent or not definition.sub_agents:
        return []

    candidates = [
        candidate for name, candidate in sorted(definitions.items())
        if not candidate.is_main_agent and name != definition.name
    ]
    if definition.sub_agents == "all":
        return candidates

    wanted = set(definition.sub_agents)
    unknown = wanted - {candidate.name for candidate in candidates}
    if unknown:
        logger.warning("Unknown sub-agents ignored", agent=definition.name, sub_agents=sorted(unknown))
    return [candidate for candidate in candidates if candidate.name in wanted]


def format_sub_agent_section(sub_agents: list[AgentDefinition]) -> str:
    """Supervisor prompt section listing the delegation targets."""
    lines = [f"- **{agent.name}**: {agent.description}" for agent in sub_agents]
    return "\n".join([
        "## Available Sub-agents",
        "",
        f"You can delegate to the following sub-agents with `{CALL_FLOW}`:",
        "",
        *lines,
        "",
        f"Call `{CALL_FLOW}` with the sub-agent's name as `flowId`.",
    ])


async def build_agent_engine(
    definition: AgentDefinition | None = None,
    *,
    settings: Settings | None = None,
    registry: ToolRegistry | None = None,
    llm: BaseLLM | None = None,
    provider: str | None = None,
    store: CompressionStore | None = None,
    definitions: Mapping[str, AgentDefinition] | None = None,
) -> TurnEngine:
    """Build a single-agent engine.

    Without a definition, a generic agent with every registered tool is built.
    A main agent whose ``subAgents`` select entries of ``definitions`` gets a
    ``call_flow`` tool running those sub-agents as nested flows, provided its
    policy permits ``call_flow``.
    """
    settings = settings or get_settings()
    registry = registry or create_default_registry(settings.get_tool_filter_config())
    name = definition.name if definition else "agent"
    llm_override = llm
    policy = definition.to_tool_policy() if definition else None

    sub_agents: list[AgentDefinition] = []
    if definition is not None and definitions:
        sub_agents = select_sub_agents(definition, definitions)
        if sub_agents and policy is not None and not policy.permits(CALL_FLOW):
            logger.info("Sub-agents ignored, call_flow not permitted", agent=name)
            sub_agents = []

    compression = _compression_enabled(definition, settings)
    needs_store = compression or any(_compression_enabled(a, settings) for a in sub_agents)
    if store is None and settings.compression_persist and needs_store:
        store = await create_compression_store(settings)

    if llm is None:
        if definition is not None:
            llm = _definition_llm(definition, settings, provider)
        else:
            llm = create_llm(settings.get_llm_config(provider=provider))

    governor = None
    if compression:
        governor = await create_governor(settings, f"agent.{name}", store=store)

    system_prompt = (definition.system_prompt if definition else "") or DEFAULT_AGENT_PROMPT

    if sub_agents:
        flows = FlowRegistry()
        for sub_agent in sub_agents:
            # Sub-agents get the base registry: no call_flow, no further nesting
            sub_engine = await build_agent_engine(
                sub_agent,
                settings=settings,
                registry=registry,
                llm=llm_override,
                provider=provider,
                store=store,
            )
            flows.register(
                sub_agent.name,
                FlowDefinition(sub_agent.name, sub_engine, description=sub_agent.description),
            )

        supervisor_registry = ToolRegistry(registry.filter_config)
        for tool in registry.list_tools():
            supervisor_registry.register(tool)
        supervisor_registry.register(CallFlowTool(FlowRunner(flows)))
        registry = supervisor_registry

        if definition.can_be_supervisor:
            system_prompt = system_prompt + "\n\n" + format_sub_agent_section(sub_agents)

        logger.info("Sub-agents wired", agent=name, sub_agents=[a.name for a in sub_agents])

    return TurnEngine(
        name,
        llm,
        registry,
        policy=policy,
        role=name,
        system_prompt=system_prompt,
        governor=governor,
        max_steps=settings.max_turn_steps,
    )


async def build_multi_agent_engine(
    *,
    settings: Settings | None = None,
    registry: ToolRegistry | None = None,
    llm: BaseLLM | None = None,
    provider: str | None = None,
    store: CompressionStore | None = None,
) -> TurnEngine:
    """Build the supervisor engine of the plan/execute setup."""
    settings = settings or get_settings()
    registry = registry or create_default_registry(settings.get_tool_filter_config())
    llm = llm or create_llm(settings.get_llm_config(provider=provider))

    governors = {}
    if settings.compression_enabled:
        if store is None and settings.compression_persist:
            store = await create_compression_store(settings)
        for role in ("supervisor", "planner", "implementer"):
            governors[role] = await create_governor(settings, f"multi-agent.{role}", store=store)

    return build_plan_execute_engine(
        llm,
        registry,
        governors=governors,
        max_steps=settings.max_turn_steps,
    )
