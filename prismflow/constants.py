"""Shared constants for the workflow engine."""

MAIN_BRANCH = "main"

UNKNOWN_USER_NAME = "Unknown User"

DEFAULT_MAX_AUTO_ADVANCE = 50

DEFAULT_LOCK_TIMEOUT = 30.0

# Display labels for decision-bearing connections.
DECISION_LABELS = {
    "approved": "If Approved",
    "approve": "If Approved",
    "rejected": "If Rejected",
    "reject": "If Rejected",
    "needs_changes": "If Needs Changes",
    "needs-changes": "If Needs Changes",
    "default": "Continue",
    "all_approved": "If All Approved",
    "any_rejected": "If Any Rejected",
}

# Aggregate outcomes of a released sync node.
ALL_APPROVED = "all_approved"
ANY_REJECTED = "any_rejected"
NO_APPROVALS = "no_approvals"

# Decision labels a sync connection may carry for each aggregate outcome.
SYNC_OUTCOME_LABELS = {
    ALL_APPROVED: frozenset({"all_approved", "approved", "approve"}),
    ANY_REJECTED: frozenset({"any_rejected", "rejected", "reject"}),
}
