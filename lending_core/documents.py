"""
Schedule Document Module

Read-only, render-ready view of a computed schedule for the PDF renderer.
Rows are copied from the schedule as produced by the amortization engine so
the printed schedule always matches the ledger; nothing here recomputes
amortization.
"""

from datetime import date
from typing import Any, Dict, List, Optional

from .illustration import CostIllustration
from .schedule import PaymentScheduleItem, RepaymentSchedule
from .terms import LoanTerms, RepaymentStyle


SCHEDULE_COLUMNS = ("#", "DUE DATE", "PRINCIPAL", "INTEREST", "EMI/AMOUNT", "BALANCE")

STYLE_LABELS = {
    RepaymentStyle.EMI: "Equated installments (EMI)",
    RepaymentStyle.INTEREST_ONLY: "Interest only, principal at maturity",
    RepaymentStyle.FULL_PAYMENT: "Single payment at maturity",
}


def _row(item: PaymentScheduleItem) -> Dict[str, str]:
    row = {
        "#": str(item.installment_number),
        "DUE DATE": item.due_date.strftime("%d %b %Y"),
        "PRINCIPAL": item.principal_amount.to_string(),
        "INTEREST": item.interest_amount.to_string(),
        "EMI/AMOUNT": item.total_amount.to_string(),
        "BALANCE": item.remaining_balance.to_string(),
    }
    if item.grace_period_end_date:
        row["GRACE UNTIL"] = item.grace_period_end_date.strftime("%d %b %Y")
    if item.late_payment_fee and item.late_payment_fee.is_positive():
        row["LATE FEE"] = item.late_payment_fee.to_string()
    return row


def build_schedule_document(
    terms: LoanTerms,
    schedule: RepaymentSchedule,
    illustration: Optional[CostIllustration] = None,
    loan_id: Optional[str] = None,
    generated_on: Optional[date] = None
) -> Dict[str, Any]:
    """
    Lay out a schedule for rendering

    Returns:
        Dictionary with formatted summary fields, column headings, one row
        per installment and totals taken from the schedule itself
    """
    summary = {
        "Loan account No.": (loan_id or "")[:16].upper(),
        "Sanctioned loan amount": terms.principal.to_string(),
        "Interest rate (p.a.)": f"{terms.annual_rate_percent}% {terms.interest_method.value}",
        "Loan term (in months)": str(terms.tenure_months),
        "Repayment": STYLE_LABELS[terms.repayment_style],
        "Number of installments": str(schedule.number_of_payments),
        "First due date": schedule.first_due_date.strftime("%d %b %Y"),
        "Maturity date": schedule.maturity_date.strftime("%d %b %Y"),
    }
    if terms.repayment_style != RepaymentStyle.FULL_PAYMENT:
        summary["Frequency"] = terms.frequency.value.replace("_", " ")
    if schedule.emi_amount is not None:
        summary["EMI"] = schedule.emi_amount.to_string()

    rows: List[Dict[str, str]] = [_row(item) for item in schedule.schedule]

    document = {
        "title": "Repayment Schedule",
        "generated_on": (generated_on or date.today()).isoformat(),
        "summary": summary,
        "columns": list(SCHEDULE_COLUMNS),
        "rows": rows,
        "totals": {
            "PRINCIPAL": schedule.total_principal.to_string(),
            "INTEREST": schedule.total_interest.to_string(),
            "EMI/AMOUNT": schedule.total_amount.to_string(),
        },
        "cost_illustration": None,
    }

    if illustration is not None:
        document["cost_illustration"] = {
            "Processing fee": illustration.processing_fee.to_string(),
            "Other charges": illustration.other_charges.to_string(),
            "Total cost of credit": illustration.total_cost_of_credit.to_string(),
            "Annual percentage rate (illustrative)": f"{illustration.apr_percent}%",
            "Effective annual rate": f"{illustration.effective_annual_rate_percent}%",
        }
    return document
