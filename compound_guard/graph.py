"""
LangGraph orchestrator for the compounding verification workflow.

Gate (no status change until it passes):
    Intake Preflight → Resolve Formula → Compounding Preflight

Verification loop (bounded, strictly sequential):
    Start Run → Calculate → Hard Checks → AI Review → Record Attempt
        → pass or attempts exhausted: Finalize
        → otherwise: Correct → Calculate
"""

import logging
from datetime import date
from functools import partial
from typing import Literal, Optional

from langgraph.graph import END, StateGraph

from .exceptions import JobStateError
from .nodes import (
    PipelineServices,
    RunClaim,
    run_ai_review_node,
    run_calculate,
    run_compounding_preflight,
    run_correct,
    run_finalize,
    run_hard_checks_node,
    run_intake_preflight_node,
    run_preflight_failed,
    run_record_attempt,
    run_resolve_formula,
    run_start,
)
from .state import PipelineOutcome, VerificationState

logger = logging.getLogger(__name__)

# Each attempt walks five nodes; leave headroom over the default of 25.
RECURSION_LIMIT = 100

NON_RUNNABLE_STATUSES = ("in_progress", "approved", "rejected")


def route_after_intake(state: VerificationState) -> Literal["resolve_formula", "preflight_failed"]:
    if state["preflight"].passed:
        return "resolve_formula"
    logger.info("Graph: intake preflight blocked the run")
    return "preflight_failed"


def route_after_compounding_preflight(state: VerificationState) -> Literal["start_run", "preflight_failed"]:
    if state["preflight"].passed:
        return "start_run"
    logger.info("Graph: pre-compounding preflight blocked the run")
    return "preflight_failed"


def route_after_attempt(state: VerificationState) -> Literal["correct", "finalize"]:
    """Stop on the first passing attempt or once the attempt bound is reached."""
    attempts = state["attempts"]
    if attempts[-1].overall_status == "pass":
        logger.info("Graph: attempt passed, finalizing")
        return "finalize"
    if len(attempts) >= state["max_attempts"]:
        logger.info("Graph: attempts exhausted, finalizing")
        return "finalize"
    logger.info("Graph: routing to deterministic corrections")
    return "correct"


def build_verification_graph(services: PipelineServices, claim: Optional[RunClaim] = None) -> StateGraph:
    """Build the (uncompiled) verification graph with services bound into every node."""
    graph = StateGraph(VerificationState)

    graph.add_node("intake_preflight", partial(run_intake_preflight_node, services=services))
    graph.add_node("resolve_formula", partial(run_resolve_formula, services=services))
    graph.add_node("compounding_preflight", partial(run_compounding_preflight, services=services))
    graph.add_node("preflight_failed", partial(run_preflight_failed, services=services))
    graph.add_node("start_run", partial(run_start, services=services, claim=claim))
    graph.add_node("calculate", partial(run_calculate, services=services))
    graph.add_node("hard_checks", partial(run_hard_checks_node, services=services))
    graph.add_node("ai_review", partial(run_ai_review_node, services=services))
    graph.add_node("record_attempt", partial(run_record_attempt, services=services))
    graph.add_node("correct", partial(run_correct, services=services))
    graph.add_node("finalize", partial(run_finalize, services=services))

    graph.set_entry_point("intake_preflight")

    graph.add_conditional_edges(
        "intake_preflight",
        route_after_intake,
        {"resolve_formula": "resolve_formula", "preflight_failed": "preflight_failed"},
    )
    graph.add_edge("resolve_formula", "compounding_preflight")
    graph.add_conditional_edges(
        "compounding_preflight",
        route_after_compounding_preflight,
        {"start_run": "start_run", "preflight_failed": "preflight_failed"},
    )

    graph.add_edge("start_run", "calculate")
    graph.add_edge("calculate", "hard_checks")
    graph.add_edge("hard_checks", "ai_review")
    graph.add_edge("ai_review", "record_attempt")
    graph.add_conditional_edges(
        "record_attempt",
        route_after_attempt,
        {"correct": "correct", "finalize": "finalize"},
    )
    graph.add_edge("correct", "calculate")

    graph.add_edge("preflight_failed", END)
    graph.add_edge("finalize", END)

    return graph


def run_pipeline(
    job_id: str,
    pharmacist_feedback: Optional[str] = None,
    services: Optional[PipelineServices] = None,
    run_date: Optional[date] = None,
    store=None,
) -> PipelineOutcome:
    """
    Run verification for one job and return its outcome.

    Raises JobStateError when the job is already in progress or terminal.
    Preflight, safety and external-lookup failures are never raised; they
    come back as blocking issues with status needs_review.

    Args:
        job_id: Compounding job id
        pharmacist_feedback: Optional free-text context for this run
        services: Pipeline collaborators (store, fetchers, reasoner, corrector)
        run_date: Date the BUD is counted from (defaults to today)
        store: Shorthand for PipelineServices(store=store) when services is omitted
    """
    if services is None:
        if store is None:
            raise ValueError("run_pipeline needs either services or a store.")
        services = PipelineServices(store=store)

    context = services.store.get_job_context(job_id)
    if context.job.status in NON_RUNNABLE_STATUSES:
        raise JobStateError(
            f"Job {job_id} is {context.job.status}; a new pipeline run is not allowed.",
            code="PIPELINE_ALREADY_RUNNING" if context.job.status == "in_progress" else None,
            detail={"status": context.job.status},
        )

    feedback = pharmacist_feedback.strip() if pharmacist_feedback and pharmacist_feedback.strip() else None
    initial_state: VerificationState = {
        "job_id": job_id,
        "context": context,
        "pharmacist_feedback": feedback,
        "run_date": run_date or date.today(),
        "preflight_warnings": [],
        "attempts": [],
        "max_attempts": services.settings.max_iterations,
        "base_version": 0,
    }

    logger.info(f"Starting pipeline for job {job_id} ({context.prescription.medication_name}, feedback={bool(feedback)})")

    claim = RunClaim()
    compiled = build_verification_graph(services, claim=claim).compile()
    try:
        final_state = compiled.invoke(initial_state, config={"recursion_limit": RECURSION_LIMIT})
    except Exception as e:
        if not claim.held:
            # The job belongs to whoever holds it now; leave its status alone.
            logger.warning(f"Pipeline for job {job_id} stopped before claiming the job: {e}")
            raise
        logger.error(f"Pipeline execution failed for job {job_id}: {e}", exc_info=True)
        # Do not leave a claimed job stuck in in_progress.
        try:
            services.store.update_job_state(
                job_id,
                status="needs_review",
                expected_statuses=("in_progress",),
                last_error=f"Pipeline error: {e}",
            )
        except JobStateError as state_error:
            logger.warning(f"Could not release job {job_id} after failure: {state_error}")
        raise

    outcome = PipelineOutcome(
        job_id=job_id,
        status=final_state["final_status"],
        attempts=len(final_state.get("attempts", [])),
        blocking_issues=final_state.get("blocking_issues", []),
        warnings=final_state.get("warnings", []),
    )
    logger.info(f"Pipeline complete for job {job_id}: {outcome.status} after {outcome.attempts} attempt(s)")
    return outcome


def get_graph_mermaid(services: PipelineServices) -> str:
    """Return a Mermaid diagram of the graph (for documentation and debugging)."""
    return build_verification_graph(services).compile().get_graph().draw_mermaid()
