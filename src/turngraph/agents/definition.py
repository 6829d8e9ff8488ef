"""
Agent definitions: markdown files with YAML frontmatter.

    ---
    name: code-agent
    type: main-agent
    description: General coding agent
    tools: [file_read, file_write, call_flow]
    subAgents: [reviewer]
    canBeSupervisor: true
    ---
    System prompt body...

Definitions are validated once, when they are loaded. A file with missing
required fields fails the load instead of surfacing later.

``subAgents`` (a list of names or ``all``) selects the sub-agents a main
agent may run through ``call_flow``; ``canBeSupervisor`` also lists them in
its system prompt.
"""

from pathlib import Path
from typing import Literal

import frontmatter
import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import AgentDefinitionError
from ..tools.builtin import ASK_USER, FINAL_ANSWER
from ..tools.policy import ToolPolicy

logger = structlog.get_logger()

REQUIRED_FIELDS = ("name", "type", "description")
SKIPPED_FILES = {"README.md"}


class ToolPolicyModel(BaseModel):
    allow: list[str] | None = None
    deny: list[str] | None = None

    def to_policy(self) -> ToolPolicy:
        return ToolPolicy.from_lists(allow=self.allow, deny=self.deny)


class AgentDefinition(BaseModel):
    """Typed agent definition."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1)
    type: Literal["main-agent", "sub-agent"]
    description: str = Field(min_length=1)
    keywords: list[str] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=list)
    tool_policy: ToolPolicyModel | None = Field(default=None, alias="toolPolicy")
    sub_agents: list[str] | Literal["all"] | None = Field(default=None, alias="subAgents")
    can_be_supervisor: bool = Field(default=False, alias="canBeSupervisor")
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = Field(default=None, alias="maxTokens")
    compression_enabled: bool | None = Field(default=None, alias="compressionEnabled")
    system_prompt: str = ""
    path: str | None = None

    @property
    def is_main_agent(self) -> bool:
        return self.type == "main-agent"

    def to_tool_policy(self) -> ToolPolicy | None:
        """Explicit policy wins; a plain tool list becomes an allow-list.

        Sub-agents run nested inside another turn and never get ``ask_user``.
        """
        if self.tool_policy is not None:
            policy = self.tool_policy.to_policy()
        elif self.tools:
            policy = ToolPolicy.allow_only(*self.tools, FINAL_ANSWER, ASK_USER)
        else:
            policy = None

        if self.is_main_agent:
            return policy
        if policy is None:
            return ToolPolicy.deny_only(ASK_USER)
        if policy.allow:
            # An empty allow-list would permit everything
            return ToolPolicy(allow=(policy.allow - {ASK_USER}) or frozenset({FINAL_ANSWER}))
        return ToolPolicy(deny=(policy.deny or frozenset()) | {ASK_USER})


def parse_agent_file(path: str | Path) -> AgentDefinition:
    """Load and validate one agent definition.

    Raises:
        AgentDefinitionError: unreadable file, missing frontmatter or
            required fields, or invalid values.
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            post = frontmatter.load(f)
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise AgentDefinitionError(f"Cannot read agent definition {path}: {e}") from e

    meta = dict(post.metadata or {})
    if not meta:
        raise AgentDefinitionError(f"Agent definition {path} has no frontmatter")

    missing = [field for field in REQUIRED_FIELDS if not meta.get(field)]
    if missing:
        raise AgentDefinitionError(
            f"Agent definition {path} is missing required fields: {', '.join(missing)}"
        )

    meta["system_prompt"] = post.content.strip()
    meta["path"] = str(path)

    try:
        return AgentDefinition.model_validate(meta)
    except ValidationError as e:
        raise AgentDefinitionError(f"Invalid agent definition {path}: {e}") from e


def discover_agent_definitions(*directories: str | Path) -> dict[str, AgentDefinition]:
    """Load every ``*.md`` definition in ``directories``.

    Later directories override earlier ones, so project agents can replace
    built-in agents of the same name. Missing directories are skipped.
    """
    definitions: dict[str, AgentDefinition] = {}

    for directory in directories:
        directory = Path(directory).expanduser()
        if not directory.is_dir():
            continue

        for path in sorted(directory.glob("*.md")):
            if path.name in SKIPPED_FILES:
                continue
            definition = parse_agent_file(path)
            if definition.name in definitions:
                logger.info("Agent definition overridden", agent=definition.name, file=str(path))
            definitions[definition.name] = definition

    logger.info("Agent definitions loaded", count=len(definitions))
    return definitions
