"""
Persistence interface consumed by the pipeline and the approval workflow.

The orchestrator depends only on CompoundingStore, never on a concrete
database. Every write that guards a job transition is conditional on the
job's current status (the row update is the serialization point), and
inventory consumption is one atomic call.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..state import Formula, FinalOutput, InventoryLot, JobContext, RpcResult, SigningIntent

UNSET: Any = object()


class CompoundingStore(ABC):

    # --- Reads ---

    @abstractmethod
    def get_job_context(self, job_id: str) -> JobContext:
        """Job + prescription + patient (current medications from the patient's other prescriptions).

        Raises NotFoundError when the job does not exist.
        """

    @abstractmethod
    def find_formula(
        self,
        medication_name: str,
        patient_id: Optional[str] = None,
        source: Optional[str] = None,
    ) -> Optional[Formula]:
        """Most recent active formula; patient_id=None restricts to formulas with no patient."""

    @abstractmethod
    def get_formula(self, formula_id: str) -> Optional[Formula]:
        ...

    @abstractmethod
    def get_inventory_for_ingredients(self, ingredient_names: Sequence[str]) -> List[InventoryLot]:
        """All lots for the given ingredient names."""

    @abstractmethod
    def get_latest_report_version(self, job_id: str) -> int:
        """Highest report version for the job, 0 when none exist."""

    @abstractmethod
    def get_latest_report(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Latest calculation report row (id, version, report, hard_checks, ai_review, overall_status)."""

    # --- Writes ---

    @abstractmethod
    def insert_formula(self, formula: Formula) -> Formula:
        """Persist a formula (used for generated formulas before first use)."""

    @abstractmethod
    def update_job_state(
        self,
        job_id: str,
        status: Optional[str] = None,
        expected_statuses: Optional[Sequence[str]] = None,
        formula_id: Any = UNSET,
        iteration_count: Any = UNSET,
        last_error: Any = UNSET,
        pharmacist_feedback: Any = UNSET,
        completed: bool = False,
    ) -> None:
        """
        Update job fields. With expected_statuses, the update only applies
        while the job is in one of them; otherwise JobStateError is raised.
        """

    @abstractmethod
    def insert_calculation_report(
        self,
        job_id: str,
        version: int,
        context: Dict[str, Any],
        report: Dict[str, Any],
        hard_checks: Dict[str, Any],
        ai_review: Dict[str, Any],
        overall_status: str,
        is_final: bool = False,
    ) -> str:
        """Append one report version; versions strictly increase per job."""

    @abstractmethod
    def write_audit_event(self, job_id: Optional[str], event_type: str, payload: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def insert_pharmacist_feedback(self, job_id: str, decision: str, feedback: str) -> None:
        ...

    @abstractmethod
    def consume_inventory_for_job(self, job_id: str) -> List[Dict[str, Any]]:
        """
        Atomically draw the latest report's ingredient requirements from stock
        (earliest-expiring lots first) and return the consumed line items.

        Raises JobStateError when the job is not verified or already drew stock,
        and InventoryError when any requirement cannot be met; both change nothing.
        """

    @abstractmethod
    def approve_and_consume(
        self,
        job_id: str,
        report_id: str,
        build_output: Callable[[List[Dict[str, Any]]], FinalOutput],
        signing: Optional[Dict[str, str]] = None,
    ) -> FinalOutput:
        """
        Approve a verified job in one transaction: draw stock, store the final
        output built from the consumed lines, mark the report final and move
        the job to approved.

        `signing` holds user_id, intent_id, challenge_code, signature_meaning
        and pin; when given, the intent is consumed only if the approval
        commits. A refusal raises SigningError and only the PIN failure
        counter is kept. JobStateError / InventoryError leave everything
        untouched.
        """

    # --- Sign-off credentials ---

    @abstractmethod
    def issue_signing_intent(
        self,
        job_id: str,
        user_id: str,
        signature_meaning: str,
        ttl_minutes: int,
    ) -> SigningIntent:
        ...

    @abstractmethod
    def consume_signing_intent(
        self,
        job_id: str,
        user_id: str,
        intent_id: str,
        challenge_code: str,
        signature_meaning: str,
        pin: str,
    ) -> RpcResult:
        """Verify PIN, intent and challenge together and consume the intent exactly once."""

    @abstractmethod
    def verify_signature_pin(self, user_id: str, pin: str) -> RpcResult:
        ...

    @abstractmethod
    def set_signature_pin(self, user_id: str, pin: str) -> None:
        ...
