"""
Tool policies - which tools a role may see and invoke.

Two layers are applied in order:

1. ``ToolFilterConfig`` - environment-wide filtering (excluded tools,
   autonomous mode, MCP tools on/off).
2. ``ToolPolicy`` - the per-role allow/deny pair. A non-empty allow-list
   wins outright; the deny-list is only consulted when there is no
   allow-list.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Literal, Protocol, TypeVar

# Never exposed to a model, whatever the policy says
HIDDEN_TOOLS = frozenset({"approval"})


class _Named(Protocol):
    @property
    def name(self) -> str: ...


T = TypeVar("T", bound=_Named)


@dataclass(frozen=True)
class ToolPolicy:
    """Allow/deny rule set restricting the tools of one role."""

    allow: frozenset[str] | None = None
    deny: frozenset[str] | None = None

    @classmethod
    def allow_only(cls, *names: str) -> "ToolPolicy":
        return cls(allow=frozenset(names))

    @classmethod
    def deny_only(cls, *names: str) -> "ToolPolicy":
        return cls(deny=frozenset(names))

    @classmethod
    def from_lists(
        cls,
        allow: Iterable[str] | None = None,
        deny: Iterable[str] | None = None,
    ) -> "ToolPolicy":
        return cls(
            allow=frozenset(allow) if allow else None,
            deny=frozenset(deny) if deny else None,
        )

    def permits(self, name: str) -> bool:
        """Check a single tool name against the policy."""
        if self.allow:
            return name in self.allow
        if self.deny:
            return name not in self.deny
        return True


@dataclass(frozen=True)
class ToolFilterConfig:
    """Environment-level tool filtering."""

    mode: Literal["autonomous", "interactive"] = "interactive"
    mcp_tools_enabled: bool = True
    excluded_tools: frozenset[str] = frozenset()


def should_include_tool(name: str, config: ToolFilterConfig) -> bool:
    """Check whether a tool survives the environment-level filter."""
    if name in config.excluded_tools or name in HIDDEN_TOOLS:
        return False

    # Nobody is there to answer in autonomous mode
    if config.mode == "autonomous" and name == "ask_user":
        return False

    if not config.mcp_tools_enabled and name.startswith("mcp_"):
        return False

    return True


def filter_tools(tools: Sequence[T], config: ToolFilterConfig | None = None) -> list[T]:
    """Filter tools with the environment-level configuration."""
    config = config or ToolFilterConfig()
    return [tool for tool in tools if should_include_tool(tool.name, config)]


def resolve_policy(
    tools: Sequence[T],
    policy: ToolPolicy | None,
    filter_config: ToolFilterConfig | None = None,
) -> list[T]:
    """Compute the usable subset of ``tools`` for a role.

    Registry order is preserved.
    """
    candidates = filter_tools(tools, filter_config)
    if policy is None:
        return candidates
    return [tool for tool in candidates if policy.permits(tool.name)]
