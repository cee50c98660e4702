"""External lookups and safety checks for the Compound-Guard workflow."""

from .http_lookup import (
    fetch_json,
    LookupOk,
    LookupMissing,
    LookupFailed,
)

from .clinical_label_tools import (
    fetch_clinical_safety_snapshot,
    extract_dose_constraints_from_label_text,
    build_missing_snapshot,
    build_error_snapshot,
)

from .reference_tools import (
    fetch_medication_reference_snapshot,
    fetch_rxnorm_reference,
    fetch_openfda_interaction_reference,
    fetch_openfda_ndc_reference,
    fetch_dailymed_reference,
)

from .safety_tools import (
    run_hard_checks,
    evaluate_external_clinical_checks,
    check_dose_range,
    check_allergy_crossmatch,
    check_inventory_availability,
    check_lot_expiry,
    check_incompatibilities,
    check_drug_interactions,
    check_external_dose_range,
    check_allergy_cross_sensitivity,
)

__all__ = [
    # HTTP
    "fetch_json",
    "LookupOk",
    "LookupMissing",
    "LookupFailed",

    # Clinical label snapshot
    "fetch_clinical_safety_snapshot",
    "extract_dose_constraints_from_label_text",
    "build_missing_snapshot",
    "build_error_snapshot",

    # Reference snapshot
    "fetch_medication_reference_snapshot",
    "fetch_rxnorm_reference",
    "fetch_openfda_interaction_reference",
    "fetch_openfda_ndc_reference",
    "fetch_dailymed_reference",

    # Hard checks
    "run_hard_checks",
    "evaluate_external_clinical_checks",
    "check_dose_range",
    "check_allergy_crossmatch",
    "check_inventory_availability",
    "check_lot_expiry",
    "check_incompatibilities",
    "check_drug_interactions",
    "check_external_dose_range",
    "check_allergy_cross_sensitivity",
]
