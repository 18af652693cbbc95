"""Single-iteration LangGraph for the refinement loop.

This module creates a LINEAR graph (no loops) that handles exactly
one iteration. The orchestrator's outer loop manages iteration looping.

Graph flow:
    generate -> evaluate -> check_stop -> END
"""

from langgraph.graph import END, StateGraph

from ...core.state import IterationState
from .nodes import check_stop_node, evaluate_node, generate_node


def create_single_iteration_graph():
    """Create a LINEAR graph for a single refinement iteration.

    Each invocation handles exactly one iteration:
    1. generate: Produce a candidate (prior feedback folded in)
    2. evaluate: Score it and build the iteration record
    3. check_stop: Evaluate stop conditions over the full history

    Returns:
        Compiled StateGraph (no checkpointer, state is owned by the orchestrator)
    """
    workflow = StateGraph(IterationState)

    workflow.add_node("generate", generate_node)
    workflow.add_node("evaluate", evaluate_node)
    workflow.add_node("check_stop", check_stop_node)

    workflow.set_entry_point("generate")
    workflow.add_edge("generate", "evaluate")
    workflow.add_edge("evaluate", "check_stop")
    workflow.add_edge("check_stop", END)

    return workflow.compile()
