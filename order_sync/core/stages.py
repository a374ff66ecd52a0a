"""
The fixed 8-stage purchase order lifecycle.

The only transition the sync pipeline may apply is a single step forward
from a non-terminal stage. Anything else (skip-ahead, regression,
self-transition, advancing past stage 8) is rejected.
"""

from dataclasses import dataclass

from order_sync.core.exceptions import UnknownStage

FIRST_STAGE = 1
TERMINAL_STAGE = 8


@dataclass(frozen=True)
class Stage:
    """One entry of the order stage catalog."""

    id: int
    name: str
    short_name: str
    description: str
    color: str
    triggers: str = ""


STAGES: tuple[Stage, ...] = (
    Stage(
        id=1,
        name="Order Confirmed",
        short_name="PO Sent",
        description="Purchase Order received/sent",
        color="blue",
        triggers=(
            'Purchase Order sent to a supplier. Subject contains "PURCHASE ORDER" or '
            '"NEW PURCHASE ORDER" + PO number. Body has phrases like "PLEASE FIND ATTACHED NEW PO", '
            '"KINDLY ACKNOWLEDGE THE RECEIPT", "PLEASE SEND US PROFORMA". Usually has the PO '
            "document attached."
        ),
    ),
    Stage(
        id=2,
        name="Proforma Issued",
        short_name="PI Issued",
        description="Proforma Invoice issued",
        color="indigo",
        triggers=(
            'Proforma Invoice (PI). Subject contains "PROFORMA INVOICE" or "NEW PROFORMA INVOICE" '
            '+ PI number + PO number + supplier, e.g. "NEW PROFORMA INVOICE - PI GI/PI/25-26/I02013 - '
            'PO 3004 - JJ SEAFOODS". Body is often empty, the PI is attached. PI numbers look like '
            "GI/PI/25-26/IXXXXX, PEI/PI/XXX/2025-26, PI/SSI/XXX/25-26 or SLS-XXX."
        ),
    ),
    Stage(
        id=3,
        name="Artwork Approved",
        short_name="Artwork OK",
        description='Complete when email says "ARTWORK IS OK"',
        color="purple",
        triggers=(
            'Artwork or label approval. Subject contains "NEED APPROVAL", "NEED ARTWORK APPROVAL" '
            'or "NEED LABELS APPROVAL". Approval phrases: "The artworks are OK", "The labels are OK", '
            '"OK, thank you". Often a forwarded approval chain from the buyer.'
        ),
    ),
    Stage(
        id=4,
        name="Quality Check",
        short_name="QC Done",
        description="QC from Hansel Fernandez or J B Boda",
        color="pink",
        triggers=(
            'QC or inspection results. Keywords: "quality check", "inspection report", '
            '"QC certificate", "inspection certificate", "pre-shipment inspection".'
        ),
    ),
    Stage(
        id=5,
        name="Schedule Confirmed",
        short_name="Scheduled",
        description="Vessel schedule confirmed",
        color="orange",
        triggers=(
            'Vessel or shipping schedule confirmed. Keywords: "vessel schedule", "booking confirmed", '
            '"ETD", "shipping schedule", "container booked", "sailing schedule".'
        ),
    ),
    Stage(
        id=6,
        name="Draft Documents",
        short_name="Docs OK",
        description='Complete when "DOCUMENTS OK" received',
        color="yellow",
        triggers=(
            'Draft shipping documents for review. Keywords: "draft BL", "draft documents", '
            '"draft bill of lading", "documents for review", "please check documents".'
        ),
    ),
    Stage(
        id=7,
        name="Final Documents",
        short_name="Final Docs",
        description="Final document copies sent",
        color="teal",
        triggers=(
            'Final or original documents sent. Keywords: "final documents", "original documents", '
            '"documents sent", "originals couriered", "BL released".'
        ),
    ),
    Stage(
        id=8,
        name="DHL Shipped",
        short_name="DHL Sent",
        description="DHL tracking number shared",
        color="green",
        triggers=(
            'DHL or courier tracking info. Keywords: "DHL", "tracking number", "AWB", '
            '"airway bill", "courier tracking", "DHL waybill".'
        ),
    ),
)

_BY_ID = {stage.id: stage for stage in STAGES}


def stage_descriptor(stage_id: int) -> Stage:
    """Return the catalog entry for a stage id, or raise UnknownStage."""
    if isinstance(stage_id, bool) or not isinstance(stage_id, int):
        raise UnknownStage(stage_id)
    try:
        return _BY_ID[stage_id]
    except KeyError:
        raise UnknownStage(stage_id) from None


def is_valid_advance(current_stage: int, proposed_stage: int) -> bool:
    """True iff proposed_stage is exactly one step past a non-terminal current_stage."""
    if current_stage not in _BY_ID or proposed_stage not in _BY_ID:
        return False
    return current_stage < TERMINAL_STAGE and proposed_stage == current_stage + 1


def is_terminal(stage_id: int) -> bool:
    """True for the last stage, after which no advance is possible."""
    return stage_id >= TERMINAL_STAGE


def stage_triggers_text() -> str:
    """Stage trigger catalog formatted for the matching prompt."""
    return "\n\n".join(
        f"Stage {stage.id} ({stage.name}): {stage.triggers}" for stage in STAGES
    )
