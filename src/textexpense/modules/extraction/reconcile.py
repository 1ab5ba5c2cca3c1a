from __future__ import annotations

from dataclasses import dataclass, replace

from textexpense.core.logging import get_logger, log_event
from textexpense.modules.extraction.schemas import Reconciliation

logger = get_logger(__name__)

TOLERANCE = 1.0
MISMATCH_CONFIDENCE_CAP = 0.5
# Largest tip, as a share of the subtotal, accepted when written below the total.
MAX_EXCLUDED_TIP_SHARE = 0.3


@dataclass(frozen=True)
class Amounts:
    subtotal: float | None
    tax: float | None
    tip: float | None
    miscellaneous: float | None
    total: float | None


@dataclass(frozen=True)
class ReconcileOutcome:
    amounts: Amounts
    confidence: float
    status: Reconciliation


def _charges(amounts: Amounts, *, include_tip: bool) -> float:
    charges = (amounts.tax or 0.0) + (amounts.miscellaneous or 0.0)
    if include_tip:
        charges += amounts.tip or 0.0
    return charges


def _tip_fits(tip: float | None, subtotal: float) -> bool:
    return bool(tip) and tip <= subtotal * MAX_EXCLUDED_TIP_SHARE


def _balance(amounts: Amounts, *, subtotal: float, total: float) -> Reconciliation | None:
    if abs(subtotal + _charges(amounts, include_tip=True) - total) <= TOLERANCE:
        return Reconciliation.RECONCILED
    if _tip_fits(amounts.tip, subtotal) and (
        abs(subtotal + _charges(amounts, include_tip=False) - total) <= TOLERANCE
    ):
        return Reconciliation.TIP_EXCLUDED
    return None


def reconcile(amounts: Amounts, *, confidence: float) -> ReconcileOutcome:
    """
    Check subtotal + tax + tip + miscellaneous against total.

    Absent tax, tip and miscellaneous charges count as zero. A modest tip
    written below the printed total (subtotal + tax + misc == total) is kept
    and reported as ``tip_excluded`` rather than ``reconciled``.
    Components that cannot be reconciled are nulled and confidence is capped;
    confidence is never raised here.
    """
    if amounts.total is None:
        return ReconcileOutcome(amounts, confidence, Reconciliation.INCOMPLETE)

    total = amounts.total
    disputed: list[str] = []

    # A single component larger than the total cannot be part of it.
    for name in ("tax", "tip", "miscellaneous"):
        value = getattr(amounts, name)
        if value is not None and value > total + TOLERANCE:
            amounts = replace(amounts, **{name: None})
            disputed.append(name)

    if amounts.subtotal is None:
        if amounts.tax is None and amounts.tip is None and amounts.miscellaneous is None:
            status = Reconciliation.MISMATCH if disputed else Reconciliation.INCOMPLETE
            return _finish(amounts, confidence, status, disputed)
        derived = total - _charges(amounts, include_tip=True)
        if derived < 0:
            disputed.append("subtotal")
            return _finish(amounts, confidence, Reconciliation.MISMATCH, disputed)
        amounts = replace(amounts, subtotal=round(derived, 2))
        status = Reconciliation.MISMATCH if disputed else Reconciliation.DERIVED_SUBTOTAL
        return _finish(amounts, confidence, status, disputed)

    status = _balance(amounts, subtotal=amounts.subtotal, total=total)
    if status is not None:
        return _finish(amounts, confidence, Reconciliation.MISMATCH if disputed else status, disputed)

    amounts = replace(amounts, subtotal=None)
    disputed.append("subtotal")
    return _finish(amounts, confidence, Reconciliation.MISMATCH, disputed)


def _finish(
    amounts: Amounts, confidence: float, status: Reconciliation, disputed: list[str]
) -> ReconcileOutcome:
    if status is Reconciliation.MISMATCH:
        confidence = min(confidence, MISMATCH_CONFIDENCE_CAP)
        log_event(
            logger,
            "reconcile.mismatch",
            disputed=",".join(disputed),
            confidence=confidence,
        )
    return ReconcileOutcome(amounts, confidence, status)
