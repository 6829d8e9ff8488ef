"""
The delegation tool: lets a supervisor run a registered flow.
"""

from typing import Any

from ..tools.base import BaseTool, ToolContext, ToolResult
from .runner import FlowRunner

CALL_FLOW = "call_flow"


class CallFlowTool(BaseTool):
    """Run a nested flow and hand its shared-state patches back to the caller."""

    def __init__(self, runner: FlowRunner):
        self.runner = runner

    @property
    def name(self) -> str:
        return CALL_FLOW

    @property
    def description(self) -> str:
        flows = ", ".join(self.runner.registry.list_flows()) or "none registered"
        return (
            "Delegate a sub-task to a specialized sub-agent flow and wait for it to finish. "
            f"Available flows: {flows}."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "flowId": {
                    "type": "string",
                    "description": "Identifier of the flow to run",
                    "enum": self.runner.registry.list_flows(),
                },
                "input": {
                    "type": "string",
                    "description": "Task description handed to the flow",
                },
            },
            "required": ["flowId"],
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        return await self.invoke(kwargs, ToolContext(role="supervisor"))

    async def invoke(self, arguments: dict[str, Any], context: ToolContext) -> ToolResult:
        flow_id = arguments.get("flowId") or arguments.get("flow_id")
        if not flow_id:
            return ToolResult(success=False, error="Missing required parameter 'flowId'")

        flow_input = arguments.get("input") or ""
        if not isinstance(flow_input, str):
            flow_input = str(flow_input)

        result = await self.runner.run(
            flow_id,
            flow_input,
            shared=context.shared_data,
            cancel_event=context.cancel_event,
        )

        data = {
            "flow_id": flow_id,
            "status": result.status.value,
            "patches": [patch.to_dict() for patch in result.patches],
        }

        if not result.success:
            return ToolResult(
                success=False,
                data=data,
                error=f"Flow '{flow_id}' ended with status {result.status.value}: {result.error or 'no output'}",
            )

        updated = ", ".join(patch.path for patch in result.patches) or "nothing"
        output = f"Flow '{flow_id}' finished. Shared data updated: {updated}."
        if result.output:
            output += f"\nOutput:\n{result.output}"
        return ToolResult(
            success=True,
            output=output,
            data=data,
            patches=list(result.patches),
        )
