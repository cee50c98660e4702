"""SQLite implementation of the Compound-Guard store."""

import json
import logging
import sqlite3
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..config import Settings, get_settings
from ..exceptions import InventoryError, JobStateError, NotFoundError, SigningError
from ..signing import check_intent, hash_pin, new_signing_intent, verify_pin
from ..state import (
    JOB_TRANSITIONS,
    TERMINAL_STATUSES,
    BudRule,
    FinalOutput,
    Formula,
    FormulaSafetyProfile,
    Ingredient,
    InventoryLot,
    JobContext,
    JobRecord,
    Patient,
    Prescription,
    RpcResult,
    SigningIntent,
)
from ..utils import dedupe, parse_iso_date, round_half_up, utc_now
from .database import PathLike, get_connection, init_database, transaction
from .store import UNSET, CompoundingStore

logger = logging.getLogger(__name__)

MAX_CURRENT_MEDICATIONS = 25
MASS_UNITS = ("mg", "g")


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(value: Optional[str], fallback: Any) -> Any:
    if value is None:
        return fallback
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return fallback


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _to_mg(quantity: float, unit: str) -> float:
    return quantity * 1000 if unit == "g" else quantity


def _from_mg(quantity_mg: float, unit: str) -> float:
    return quantity_mg / 1000 if unit == "g" else quantity_mg


class SQLiteCompoundingStore(CompoundingStore):
    """
    CompoundingStore backed by a single SQLite file.

    Guarded writes run in BEGIN IMMEDIATE transactions, so status
    transitions, report versions, inventory draws and intent consumption
    are serialized per database.
    """

    def __init__(self, db_path: Optional[PathLike] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.db_path = init_database(db_path)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_job_context(self, job_id: str) -> JobContext:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT
                    j.id AS job_id, j.status, j.priority, j.iteration_count, j.last_error,
                    j.pharmacist_feedback, j.formula_id,
                    rx.id AS prescription_id, rx.patient_id, rx.medication_name, rx.route,
                    rx.dose_mg_per_kg, rx.frequency_per_day, rx.strength_mg_per_ml,
                    rx.dispense_volume_ml, rx.indication, rx.notes AS prescription_notes, rx.due_at,
                    p.first_name, p.last_name, p.dob, p.weight_kg, p.allergies,
                    p.notes AS patient_notes
                FROM compounding_jobs j
                JOIN prescriptions rx ON rx.id = j.prescription_id
                JOIN patients p ON p.id = rx.patient_id
                WHERE j.id = ?
                """,
                (job_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Job not found: {job_id}")

            other_rows = conn.execute(
                """
                SELECT medication_name FROM prescriptions
                WHERE patient_id = ? AND id != ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (row["patient_id"], row["prescription_id"], MAX_CURRENT_MEDICATIONS),
            ).fetchall()

        current_medications = dedupe(
            name.strip() for name in (r["medication_name"] or "" for r in other_rows) if name.strip()
        )
        allergies = _loads(row["allergies"], None)

        return JobContext(
            job=JobRecord(
                id=row["job_id"],
                status=row["status"],
                iteration_count=row["iteration_count"] or 0,
                priority=row["priority"] if row["priority"] is not None else 2,
                last_error=row["last_error"],
                pharmacist_feedback=row["pharmacist_feedback"],
                formula_id=row["formula_id"],
            ),
            prescription=Prescription(
                id=row["prescription_id"],
                patient_id=row["patient_id"],
                medication_name=row["medication_name"] or "",
                route=row["route"] or "",
                dose_mg_per_kg=row["dose_mg_per_kg"] or 0.0,
                frequency_per_day=row["frequency_per_day"] or 0.0,
                strength_mg_per_ml=row["strength_mg_per_ml"] or 0.0,
                dispense_volume_ml=row["dispense_volume_ml"] or 0.0,
                indication=row["indication"],
                notes=row["prescription_notes"],
                due_at=row["due_at"],
            ),
            patient=Patient(
                id=row["patient_id"],
                full_name=f"{row['first_name'] or ''} {row['last_name'] or ''}".strip(),
                dob=row["dob"],
                weight_kg=row["weight_kg"] or 0.0,
                allergies=[str(a) for a in allergies] if isinstance(allergies, list) else None,
                current_medications=current_medications,
                notes=row["patient_notes"],
            ),
        )

    def _formula_from_row(self, row: sqlite3.Row) -> Formula:
        return Formula(
            id=row["id"],
            source=row["source"],
            name=row["name"],
            medication_name=row["medication_name"],
            patient_id=row["patient_id"],
            ingredients=[Ingredient(**item) for item in _loads(row["ingredient_profile"], [])],
            safety_profile=FormulaSafetyProfile(**_loads(row["safety_profile"], {})),
            bud_rule=BudRule(**_loads(row["bud_rule"], {})),
            instructions=row["instructions"] or "",
            equipment=_loads(row["equipment"], []),
            quality_control=_loads(row["quality_control"], []),
            container_closure=row["container_closure"],
            labeling_requirements=row["labeling_requirements"],
            bud_rationale=row["bud_rationale"],
            references=_loads(row["reference_sources"], []),
        )

    def find_formula(
        self,
        medication_name: str,
        patient_id: Optional[str] = None,
        source: Optional[str] = None,
    ) -> Optional[Formula]:
        conditions = ["LOWER(medication_name) = LOWER(?)", "is_active = 1"]
        params: List[Any] = [medication_name.strip()]
        if patient_id:
            conditions.append("patient_id = ?")
            params.append(patient_id)
        else:
            conditions.append("patient_id IS NULL")
        if source:
            conditions.append("source = ?")
            params.append(source)

        query = f"""
            SELECT * FROM formulas
            WHERE {' AND '.join(conditions)}
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
        """
        with get_connection(self.db_path) as conn:
            row = conn.execute(query, tuple(params)).fetchone()
        return self._formula_from_row(row) if row else None

    def get_formula(self, formula_id: str) -> Optional[Formula]:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM formulas WHERE id = ?", (formula_id,)).fetchone()
        return self._formula_from_row(row) if row else None

    def get_inventory_for_ingredients(self, ingredient_names: Sequence[str]) -> List[InventoryLot]:
        names = [name.strip().lower() for name in ingredient_names if name and name.strip()]
        if not names:
            return []
        placeholders = ",".join("?" for _ in names)
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                f"""
                SELECT ingredient_name, available_quantity, unit, expires_on, lot_number
                FROM inventory_lots
                WHERE LOWER(ingredient_name) IN ({placeholders})
                ORDER BY ingredient_name, expires_on
                """,
                tuple(names),
            ).fetchall()
        return [
            InventoryLot(
                ingredient_name=row["ingredient_name"],
                available_quantity=row["available_quantity"],
                unit=row["unit"],
                expires_on=parse_iso_date(row["expires_on"]),
                lot_number=row["lot_number"],
            )
            for row in rows
        ]

    def get_latest_report_version(self, job_id: str) -> int:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT MAX(version) AS version FROM calculation_reports WHERE job_id = ?", (job_id,)
            ).fetchone()
        return int(row["version"] or 0)

    def _report_from_row(self, row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": str(row["id"]),
            "job_id": row["job_id"],
            "version": row["version"],
            "context": _loads(row["context"], {}),
            "report": _loads(row["report"], {}),
            "hard_checks": _loads(row["hard_checks"], {}),
            "ai_review": _loads(row["ai_review"], {}),
            "overall_status": row["overall_status"],
            "is_final": bool(row["is_final"]),
        }

    def get_latest_report(self, job_id: str) -> Optional[Dict[str, Any]]:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM calculation_reports WHERE job_id = ? ORDER BY version DESC LIMIT 1",
                (job_id,),
            ).fetchone()
        return self._report_from_row(row) if row else None

    def list_reports(self, job_id: str) -> List[Dict[str, Any]]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM calculation_reports WHERE job_id = ? ORDER BY version", (job_id,)
            ).fetchall()
        return [self._report_from_row(row) for row in rows]

    def list_audit_events(self, job_id: str) -> List[Dict[str, Any]]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT event_type, event_payload, created_at FROM audit_events WHERE job_id = ? ORDER BY id",
                (job_id,),
            ).fetchall()
        return [
            {"event_type": row["event_type"], "payload": _loads(row["event_payload"], {}), "created_at": row["created_at"]}
            for row in rows
        ]

    def list_pharmacist_feedback(self, job_id: str) -> List[Dict[str, Any]]:
        return self._query(
            "SELECT decision, feedback, created_at FROM pharmacist_feedback WHERE job_id = ? ORDER BY id", (job_id,)
        )

    def list_inventory_consumptions(self, job_id: str) -> List[Dict[str, Any]]:
        return self._query(
            "SELECT ingredient_name, lot_number, quantity, unit FROM inventory_consumptions WHERE job_id = ? ORDER BY id",
            (job_id,),
        )

    def get_final_output(self, job_id: str) -> Optional[FinalOutput]:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM final_outputs WHERE job_id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        return FinalOutput(
            id=row["id"],
            job_id=row["job_id"],
            approved_by=row["approved_by"],
            approved_at=_parse_datetime(row["approved_at"]),
            signer_name=row["signer_name"],
            signer_email=row["signer_email"],
            signature_meaning=row["signature_meaning"],
            signature_statement=row["signature_statement"],
            signature_hash=row["signature_hash"],
            final_report=_loads(row["final_report"], {}),
            label_payload=_loads(row["label_payload"], {}),
        )

    def _query(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        with get_connection(self.db_path) as conn:
            return [dict(row) for row in conn.execute(query, params).fetchall()]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_formula(self, formula: Formula) -> Formula:
        with transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO formulas (
                    id, patient_id, medication_name, name, source, ingredient_profile,
                    safety_profile, bud_rule, instructions, equipment, quality_control,
                    container_closure, labeling_requirements, bud_rationale, reference_sources
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    formula.id,
                    formula.patient_id,
                    formula.medication_name,
                    formula.name,
                    formula.source,
                    _dumps([item.model_dump() for item in formula.ingredients]),
                    _dumps(formula.safety_profile.model_dump()),
                    _dumps(formula.bud_rule.model_dump()),
                    formula.instructions,
                    _dumps(formula.equipment),
                    _dumps(formula.quality_control),
                    formula.container_closure,
                    formula.labeling_requirements,
                    formula.bud_rationale,
                    _dumps(formula.references),
                ),
            )
        logger.info(f"Stored {formula.source} formula {formula.id} for {formula.medication_name}")
        return formula

    def _current_status(self, conn: sqlite3.Connection, job_id: str) -> str:
        row = conn.execute("SELECT status FROM compounding_jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return row["status"]

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
        assignments = ["updated_at = ?"]
        params: List[Any] = [utc_now().isoformat()]
        if status is not None:
            assignments.append("status = ?")
            params.append(status)
        for column, value in (
            ("formula_id", formula_id),
            ("iteration_count", iteration_count),
            ("last_error", last_error),
            ("pharmacist_feedback", pharmacist_feedback),
        ):
            if value is not UNSET:
                assignments.append(f"{column} = ?")
                params.append(value)
        if completed:
            assignments.append("completed_at = ?")
            params.append(utc_now().isoformat())

        allowed = {s for s in JOB_TRANSITIONS if s not in TERMINAL_STATUSES}
        if status is not None:
            allowed = {s for s, targets in JOB_TRANSITIONS.items() if status in targets}
            if status not in TERMINAL_STATUSES:
                allowed.add(status)
        if expected_statuses is not None:
            allowed &= set(expected_statuses)

        with transaction(self.db_path, immediate=True) as conn:
            current = self._current_status(conn, job_id)
            if current not in allowed:
                raise JobStateError(
                    f"Job {job_id} is {current}; cannot apply update"
                    + (f" to {status}." if status else "."),
                    detail={"current_status": current, "requested_status": status},
                )
            conn.execute(
                f"UPDATE compounding_jobs SET {', '.join(assignments)} WHERE id = ? AND status = ?",
                (*params, job_id, current),
            )

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
        with transaction(self.db_path, immediate=True) as conn:
            latest = conn.execute(
                "SELECT MAX(version) AS version FROM calculation_reports WHERE job_id = ?", (job_id,)
            ).fetchone()["version"] or 0
            if version <= latest:
                raise JobStateError(
                    f"Report version {version} for job {job_id} does not follow version {latest}."
                )
            cursor = conn.execute(
                """
                INSERT INTO calculation_reports (
                    job_id, version, context, report, hard_checks, ai_review, overall_status, is_final
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id, version, _dumps(context), _dumps(report), _dumps(hard_checks),
                    _dumps(ai_review), overall_status, int(is_final),
                ),
            )
            return str(cursor.lastrowid)

    def write_audit_event(self, job_id: Optional[str], event_type: str, payload: Dict[str, Any]) -> None:
        with transaction(self.db_path) as conn:
            conn.execute(
                "INSERT INTO audit_events (job_id, event_type, event_payload) VALUES (?, ?, ?)",
                (job_id, event_type, _dumps(payload)),
            )

    def insert_pharmacist_feedback(self, job_id: str, decision: str, feedback: str) -> None:
        with transaction(self.db_path) as conn:
            conn.execute(
                "INSERT INTO pharmacist_feedback (job_id, decision, feedback) VALUES (?, ?, ?)",
                (job_id, decision, feedback),
            )

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    def _check_approvable(self, conn: sqlite3.Connection, job_id: str) -> None:
        """Refuse jobs that left `verified` or already drew stock / hold a final output."""
        current = self._current_status(conn, job_id)
        if current != "verified":
            raise JobStateError(
                f"Job {job_id} is {current}; only verified jobs can be approved.",
                detail={"current_status": current},
            )
        consumed = conn.execute(
            "SELECT COUNT(*) AS n FROM inventory_consumptions WHERE job_id = ?", (job_id,)
        ).fetchone()["n"]
        finalized = conn.execute(
            "SELECT COUNT(*) AS n FROM final_outputs WHERE job_id = ?", (job_id,)
        ).fetchone()["n"]
        if consumed or finalized:
            raise JobStateError(
                f"Job {job_id} has already been approved.",
                detail={"consumption_lines": consumed, "final_outputs": finalized},
            )

    def _plan_consumption(self, conn: sqlite3.Connection, job_id: str) -> List[Dict[str, Any]]:
        """Lot draws for the latest report's requirements; raises InventoryError before any write."""
        today = date.today().isoformat()
        row = conn.execute(
            "SELECT report FROM calculation_reports WHERE job_id = ? ORDER BY version DESC LIMIT 1",
            (job_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"No calculation report found for job {job_id}.")
        requirements = _loads(row["report"], {}).get("ingredients", [])

        plan = []
        shortages = []
        for requirement in requirements:
            name = requirement["name"]
            unit = requirement["unit"]
            units = ("mL",) if unit == "mL" else MASS_UNITS
            remaining = (
                float(requirement["required_amount"])
                if unit == "mL"
                else _to_mg(float(requirement["required_amount"]), unit)
            )

            lots = conn.execute(
                f"""
                SELECT id, lot_number, available_quantity, unit FROM inventory_lots
                WHERE LOWER(ingredient_name) = LOWER(?)
                  AND unit IN ({','.join('?' for _ in units)})
                  AND available_quantity > 0
                  AND (expires_on IS NULL OR expires_on >= ?)
                ORDER BY expires_on IS NULL, expires_on, id
                """,
                (name, *units, today),
            ).fetchall()

            # Earliest-expiring lots are drawn first.
            for lot in lots:
                if round_half_up(remaining, 6) <= 0:
                    break
                available = lot["available_quantity"] if unit == "mL" else _to_mg(lot["available_quantity"], lot["unit"])
                take = min(available, remaining)
                remaining -= take
                quantity = take if unit == "mL" else _from_mg(take, lot["unit"])
                plan.append({
                    "lot_id": lot["id"],
                    "ingredient_name": name,
                    "lot_number": lot["lot_number"],
                    "quantity": round_half_up(quantity, 6),
                    "unit": lot["unit"],
                })

            if round_half_up(remaining, 6) > 0:
                shortages.append(name)

        if shortages:
            raise InventoryError(
                f"Inventory shortage on {len(shortages)} required ingredient(s): {', '.join(shortages)}.",
                detail={"ingredients": shortages},
            )
        return plan

    def _apply_consumption(
        self, conn: sqlite3.Connection, job_id: str, plan: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        for item in plan:
            conn.execute(
                "UPDATE inventory_lots SET available_quantity = MAX(available_quantity - ?, 0) WHERE id = ?",
                (item["quantity"], item["lot_id"]),
            )
            conn.execute(
                """
                INSERT INTO inventory_consumptions (job_id, lot_id, ingredient_name, lot_number, quantity, unit)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (job_id, item["lot_id"], item["ingredient_name"], item["lot_number"], item["quantity"], item["unit"]),
            )
        logger.info(f"Consumed {len(plan)} lot line(s) for job {job_id}")
        return [{k: v for k, v in item.items() if k != "lot_id"} for item in plan]

    def consume_inventory_for_job(self, job_id: str) -> List[Dict[str, Any]]:
        with transaction(self.db_path, immediate=True) as conn:
            self._check_approvable(conn, job_id)
            plan = self._plan_consumption(conn, job_id)
            return self._apply_consumption(conn, job_id, plan)

    def approve_and_consume(
        self,
        job_id: str,
        report_id: str,
        build_output: Callable[[List[Dict[str, Any]]], FinalOutput],
        signing: Optional[Dict[str, str]] = None,
    ) -> FinalOutput:
        refusal = None
        output = None
        try:
            with transaction(self.db_path, immediate=True) as conn:
                self._check_approvable(conn, job_id)
                plan = self._plan_consumption(conn, job_id)
                if signing is not None:
                    refusal = self._consume_intent(conn, job_id, now=utc_now(), **signing)
                # A refused signature still commits the PIN failure counter, nothing else.
                if refusal is None:
                    consumption = self._apply_consumption(conn, job_id, plan)
                    output = build_output(consumption)
                    conn.execute(
                        """
                        INSERT INTO final_outputs (
                            id, job_id, approved_by, approved_at, signer_name, signer_email,
                            signature_meaning, signature_statement, signature_hash,
                            final_report, label_payload, locked_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            output.id, output.job_id, output.approved_by, output.approved_at.isoformat(),
                            output.signer_name, output.signer_email, output.signature_meaning,
                            output.signature_statement, output.signature_hash,
                            _dumps(output.final_report), _dumps(output.label_payload),
                            utc_now().isoformat(),
                        ),
                    )
                    conn.execute("UPDATE calculation_reports SET is_final = 1 WHERE id = ?", (int(report_id),))
                    now = utc_now().isoformat()
                    conn.execute(
                        """
                        UPDATE compounding_jobs
                        SET status = 'approved', completed_at = ?, updated_at = ?, last_error = NULL
                        WHERE id = ? AND status = 'verified'
                        """,
                        (now, now, job_id),
                    )
        except sqlite3.IntegrityError as e:
            raise JobStateError(f"Final output already exists for job {job_id}.") from e

        if refusal is not None:
            raise SigningError(f"Signing refused for job {job_id}.", reason=refusal)
        return output

    # ------------------------------------------------------------------
    # Sign-off credentials
    # ------------------------------------------------------------------

    def issue_signing_intent(
        self,
        job_id: str,
        user_id: str,
        signature_meaning: str,
        ttl_minutes: int,
    ) -> SigningIntent:
        intent = new_signing_intent(job_id, signature_meaning, ttl_minutes)
        with transaction(self.db_path, immediate=True) as conn:
            if self._current_status(conn, job_id) != "verified":
                raise SigningError("Only verified jobs can be signed.", reason="job_not_verified")
            conn.execute(
                """
                INSERT INTO signing_intents (
                    id, job_id, user_id, challenge_code, signature_meaning, issued_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    intent.intent_id, job_id, user_id, intent.challenge_code, intent.signature_meaning,
                    intent.issued_at.isoformat(), intent.expires_at.isoformat(),
                ),
            )
        return intent

    def _check_pin(self, conn: sqlite3.Connection, user_id: str, pin: str, now: datetime) -> Optional[str]:
        """Verify a PIN inside an open transaction; returns a refusal reason or None."""
        credential = conn.execute(
            "SELECT pin_hash, pin_salt, failed_attempts, locked_until FROM signature_credentials WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        if credential is None:
            return "pin_not_set"

        locked_until = _parse_datetime(credential["locked_until"])
        if locked_until is not None and locked_until > now:
            return "locked"

        if verify_pin(pin, credential["pin_hash"], credential["pin_salt"]):
            conn.execute(
                "UPDATE signature_credentials SET failed_attempts = 0, locked_until = NULL WHERE user_id = ?",
                (user_id,),
            )
            return None

        failed = credential["failed_attempts"] + 1
        if failed >= self.settings.pin_max_attempts:
            lock = now + timedelta(minutes=self.settings.pin_lockout_minutes)
            conn.execute(
                "UPDATE signature_credentials SET failed_attempts = 0, locked_until = ? WHERE user_id = ?",
                (lock.isoformat(), user_id),
            )
            logger.warning(f"Signature PIN locked for user {user_id} until {lock.isoformat()}")
            return "locked"

        conn.execute(
            "UPDATE signature_credentials SET failed_attempts = ? WHERE user_id = ?", (failed, user_id)
        )
        return "challenge_mismatch"

    def _consume_intent(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        user_id: str,
        intent_id: str,
        challenge_code: str,
        signature_meaning: str,
        pin: str,
        now: datetime,
    ) -> Optional[str]:
        """Check intent, challenge and PIN together and mark the intent used; returns the refusal reason."""
        if self._current_status(conn, job_id) != "verified":
            return "job_not_verified"

        row = conn.execute(
            "SELECT * FROM signing_intents WHERE id = ? AND user_id = ?", (intent_id, user_id)
        ).fetchone()
        if row is None:
            return "challenge_mismatch"

        intent = SigningIntent(
            intent_id=row["id"],
            job_id=row["job_id"],
            challenge_code=row["challenge_code"],
            signature_meaning=row["signature_meaning"],
            issued_at=_parse_datetime(row["issued_at"]),
            expires_at=_parse_datetime(row["expires_at"]),
            consumed_at=_parse_datetime(row["consumed_at"]),
        )
        reason = check_intent(intent, job_id, challenge_code, signature_meaning, now)
        if reason is not None:
            return reason

        reason = self._check_pin(conn, user_id, pin, now)
        if reason is not None:
            return reason

        updated = conn.execute(
            "UPDATE signing_intents SET consumed_at = ? WHERE id = ? AND consumed_at IS NULL",
            (now.isoformat(), intent_id),
        ).rowcount
        if updated != 1:
            return "intent_already_used"
        return None

    def consume_signing_intent(
        self,
        job_id: str,
        user_id: str,
        intent_id: str,
        challenge_code: str,
        signature_meaning: str,
        pin: str,
    ) -> RpcResult:
        with transaction(self.db_path, immediate=True) as conn:
            reason = self._consume_intent(
                conn, job_id, user_id, intent_id, challenge_code, signature_meaning, pin, utc_now()
            )
        return RpcResult(ok=reason is None, reason=reason)

    def verify_signature_pin(self, user_id: str, pin: str) -> RpcResult:
        with transaction(self.db_path, immediate=True) as conn:
            reason = self._check_pin(conn, user_id, pin, utc_now())
        return RpcResult(ok=reason is None, reason=reason)

    def set_signature_pin(self, user_id: str, pin: str) -> None:
        pin_hash, salt = hash_pin(pin)
        with transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO signature_credentials (user_id, pin_hash, pin_salt, failed_attempts, locked_until, updated_at)
                VALUES (?, ?, ?, 0, NULL, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    pin_hash = excluded.pin_hash,
                    pin_salt = excluded.pin_salt,
                    failed_attempts = 0,
                    locked_until = NULL,
                    updated_at = excluded.updated_at
                """,
                (user_id, pin_hash, salt, utc_now().isoformat()),
            )

    # ------------------------------------------------------------------
    # Record creation (seeding / imports)
    # ------------------------------------------------------------------

    def add_patient(
        self,
        first_name: str,
        last_name: str,
        weight_kg: float,
        allergies: Optional[List[str]] = None,
        dob: Optional[str] = None,
        notes: Optional[str] = None,
        patient_id: Optional[str] = None,
    ) -> str:
        patient_id = patient_id or str(uuid.uuid4())
        with transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO patients (id, first_name, last_name, dob, weight_kg, allergies, notes)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (patient_id, first_name, last_name, dob, weight_kg,
                 None if allergies is None else _dumps(allergies), notes),
            )
        return patient_id

    def add_prescription(
        self,
        patient_id: str,
        medication_name: str,
        route: str,
        dose_mg_per_kg: float,
        frequency_per_day: float,
        strength_mg_per_ml: float,
        dispense_volume_ml: float,
        indication: Optional[str] = None,
        notes: Optional[str] = None,
        due_at: Optional[str] = None,
        prescription_id: Optional[str] = None,
    ) -> str:
        prescription_id = prescription_id or str(uuid.uuid4())
        with transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO prescriptions (
                    id, patient_id, medication_name, route, dose_mg_per_kg, frequency_per_day,
                    strength_mg_per_ml, dispense_volume_ml, indication, notes, due_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (prescription_id, patient_id, medication_name, route, dose_mg_per_kg, frequency_per_day,
                 strength_mg_per_ml, dispense_volume_ml, indication, notes, due_at),
            )
        return prescription_id

    def add_job(self, prescription_id: str, priority: int = 2, job_id: Optional[str] = None) -> str:
        job_id = job_id or str(uuid.uuid4())
        with transaction(self.db_path) as conn:
            conn.execute(
                "INSERT INTO compounding_jobs (id, prescription_id, priority) VALUES (?, ?, ?)",
                (job_id, prescription_id, priority),
            )
        return job_id

    def add_inventory_lot(
        self,
        ingredient_name: str,
        lot_number: str,
        available_quantity: float,
        unit: str,
        expires_on: Optional[date] = None,
        ndc: Optional[str] = None,
    ) -> None:
        """Insert a lot, or replace quantity/expiry when the lot number already exists."""
        with transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO inventory_lots (ingredient_name, lot_number, available_quantity, unit, expires_on, ndc)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(ingredient_name, lot_number) DO UPDATE SET
                    available_quantity = excluded.available_quantity,
                    unit = excluded.unit,
                    expires_on = excluded.expires_on,
                    ndc = excluded.ndc
                """,
                (ingredient_name, lot_number, available_quantity, unit,
                 expires_on.isoformat() if expires_on else None, ndc),
            )
