from __future__ import annotations

from typing import Dict


ENTITY_LABELS: Dict[str, str] = {
    "Tender": "Tender",
    "Bid": "Bid",
    "PurchaseRequisition": "Purchase requisition",
    "PurchaseOrder": "Purchase order",
    "GoodsReceipt": "Goods receipt",
    "Invoice": "Invoice",
    "Payment": "Payment",
    "Contract": "Contract",
    "Budget": "Budget",
}


STATUS_LABELS: Dict[str, str] = {
    "DRAFT": "Draft",
    "PUBLISHED": "Published",
    "CLOSED": "Closed",
    "AWARDED": "Awarded",
    "CANCELLED": "Cancelled",
    "SUBMITTED": "Submitted",
    "UNDER_REVIEW": "Under review",
    "EVALUATED": "Evaluated",
    "ACCEPTED": "Accepted",
    "REJECTED": "Rejected",
    "WITHDRAWN": "Withdrawn",
    "PENDING_APPROVAL": "Pending approval",
    "APPROVED": "Approved",
    "CONVERTED_TO_PO": "Converted to PO",
    "SENT_TO_VENDOR": "Sent to vendor",
    "RECEIVED": "Received",
    "PENDING": "Pending",
    "INSPECTED": "Inspected",
    "PARTIAL": "Partially accepted",
    "PAID": "Paid",
    "OVERDUE": "Overdue",
    "DISPUTED": "Disputed",
    "REQUESTED": "Requested",
    "PROCESSED": "Processed",
    "FAILED": "Failed",
    "ACTIVE": "Active",
    "COMPLETED": "Completed",
    "TERMINATED": "Terminated",
    "SUSPENDED": "Suspended",
    "DEPLETED": "Depleted",
    "EXPIRED": "Expired",
}


# Badge variants mirror the colours the portals used for each status.
STATUS_VARIANTS: Dict[str, str] = {
    "DRAFT": "secondary",
    "PUBLISHED": "info",
    "SUBMITTED": "info",
    "INSPECTED": "info",
    "EVALUATED": "info",
    "CLOSED": "default",
    "APPROVED": "success",
    "ACCEPTED": "success",
    "AWARDED": "success",
    "CONVERTED_TO_PO": "success",
    "SENT_TO_VENDOR": "info",
    "RECEIVED": "success",
    "PAID": "success",
    "PROCESSED": "success",
    "ACTIVE": "success",
    "COMPLETED": "success",
    "PENDING": "secondary",
    "REQUESTED": "secondary",
    "PENDING_APPROVAL": "warning",
    "UNDER_REVIEW": "warning",
    "OVERDUE": "warning",
    "DISPUTED": "warning",
    "SUSPENDED": "warning",
    "PARTIAL": "warning",
    "REJECTED": "destructive",
    "CANCELLED": "destructive",
    "FAILED": "destructive",
    "TERMINATED": "destructive",
    "WITHDRAWN": "destructive",
    "DEPLETED": "destructive",
    "EXPIRED": "destructive",
}


TRANSITION_LABELS: Dict[str, str] = {
    "publish": "Publish",
    "close": "Close",
    "award": "Award",
    "cancel": "Cancel",
    "submit": "Submit",
    "start_review": "Start review",
    "evaluate": "Evaluate",
    "accept": "Accept",
    "reject": "Reject",
    "withdraw": "Withdraw",
    "approve": "Approve",
    "convert_to_po": "Create purchase order",
    "send_to_vendor": "Send to vendor",
    "receive": "Mark received",
    "inspect": "Inspect",
    "mark_partial": "Accept partially",
    "mark_paid": "Mark paid",
    "mark_overdue": "Mark overdue",
    "dispute": "Dispute",
    "resolve_dispute": "Resolve dispute",
    "process": "Process payment",
    "fail": "Mark failed",
    "activate": "Activate",
    "suspend": "Suspend",
    "resume": "Resume",
    "complete": "Complete",
    "terminate": "Terminate",
}


MESSAGES: Dict[str, Dict[str, str]] = {
    "success": {
        "transition_applied": "Status updated.",
        "transition_replayed": "This request was already applied.",
        "document_derived": "Document created.",
    },
    "error": {
        "action_invalid": "Invalid action for this operation.",
        "entity_not_found": "Document not found.",
        "budget_not_found": "Budget not found.",
        "reservation_not_found": "Budget reservation not found.",
        "permission_denied": "You do not have permission to perform this action.",
        "illegal_transition": "This action is not allowed for the current status.",
        "derivation_not_allowed": "This document cannot be created from the current status.",
        "currency_mismatch": "The document currency does not match the budget currency.",
        "budget_inactive": "The budget is not active.",
        "budget_required": "A budget is required for this action.",
        "insufficient_funds": "Insufficient budget for this action.",
        "concurrent_modification": "The document was changed by someone else. Try again.",
        "unexpected_error": "The operation could not be completed.",
    },
}


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)


def status_label(status: str | None) -> str:
    key = str(status or "").strip().upper()
    return STATUS_LABELS.get(key, key)


def transition_label(transition: str | None) -> str:
    key = str(transition or "").strip()
    return TRANSITION_LABELS.get(key, key)
