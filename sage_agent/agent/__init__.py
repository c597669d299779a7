"""Agent core module."""

from sage_agent.agent.budgeter import ContextBlock, ContextBudgeter, budget_blocks
from sage_agent.agent.tokens import TokenEstimator, estimate_tokens
from sage_agent.agent.tool_loop import ToolCallLoop

__all__ = ["ContextBlock", "ContextBudgeter", "TokenEstimator", "ToolCallLoop", "budget_blocks", "estimate_tokens"]
