"""
Reimbursement OCR Pipeline

Turns uploaded invoice images/PDFs into a reconciled reimbursement ledger
and exports it for submission.
"""

__version__ = "1.0.0"
__author__ = "Reimbursement OCR Pipeline Contributors"

from reimbursement_pipeline.core.models import LineItem
from reimbursement_pipeline.core.finance import reconcile

__all__ = ["LineItem", "reconcile"]
