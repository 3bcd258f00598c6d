"""Pre-execution risk assessment for tool calls."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ...documents.types import DocumentDriver, DocumentError, WriteRisk
from ..types import ToolCall
from .catalog import WEB_SEARCH_TOOL, is_editing_tool, is_risky_tool
from .types import ConfirmationRequest

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ...services.settings import Settings

LOGGER = logging.getLogger(__name__)

__all__ = ["BULK_WRITE_TOOLS", "assess_tool_risk", "requires_approval"]

BULK_WRITE_TOOLS = frozenset({"write_values", "write_formulas"})


async def assess_tool_risk(
    call: ToolCall,
    settings: "Settings",
    driver: DocumentDriver,
) -> ConfirmationRequest | None:
    """Decide whether ``call`` needs a confirmation, reading (never writing) the target range."""

    if call.name == WEB_SEARCH_TOOL:
        return ConfirmationRequest(reason="External web search may send data outside Excel.", risky=True)

    if not is_editing_tool(call.name) or call.name not in BULK_WRITE_TOOLS:
        return None

    address = str(call.args.get("address") or "").strip()
    if not address:
        return ConfirmationRequest(reason="Missing target range address.", risky=True)

    try:
        snapshot = await driver.read_range(address)
    except DocumentError as exc:
        LOGGER.info("Could not read %s for risk assessment: %s", address, exc)
        return ConfirmationRequest(reason=f"Could not read target range {address}: {exc}", risky=True)
    risk = WriteRisk.from_snapshot(snapshot)
    threshold = settings.risky_write_cell_threshold

    if risk.total_cells > threshold:
        LOGGER.info("Write to %s targets %s cells (threshold %s)", address, risk.total_cells, threshold)
        return ConfirmationRequest(
            reason=f"This write targets {risk.total_cells} cells, above the risky threshold ({threshold}).",
            risky=True,
            total_cells=risk.total_cells,
            overwritten_cells=risk.non_empty_cells,
        )

    if risk.has_formula_overwrite or risk.has_non_empty_overwrite:
        LOGGER.info(
            "Write to %s overwrites %s non-empty cells and %s formulas",
            address,
            risk.non_empty_cells,
            risk.formula_cells,
        )
        return ConfirmationRequest(
            reason=(
                f"This write may overwrite {risk.non_empty_cells} non-empty cells "
                f"and {risk.formula_cells} formulas."
            ),
            risky=True,
            total_cells=risk.total_cells,
            overwritten_cells=risk.non_empty_cells,
        )

    return None


def requires_approval(name: str, risk: ConfirmationRequest | None, settings: "Settings") -> bool:
    """Combine the approval-mode switch with the assessed risk."""

    approval_mode = bool(settings.approval_mode)
    if approval_mode and is_editing_tool(name):
        return True
    if risk is not None:
        return True
    return is_risky_tool(name) and approval_mode
