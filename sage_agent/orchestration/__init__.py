"""Routing, experts and output governance."""

from sage_agent.orchestration.governor import Governor, GovernorResult
from sage_agent.orchestration.llm_router import LLMRouter
from sage_agent.orchestration.pool import ExpertPool
from sage_agent.orchestration.router import RouteDecision, RouteKind, route

__all__ = ["ExpertPool", "Governor", "GovernorResult", "LLMRouter", "RouteDecision", "RouteKind", "route"]
