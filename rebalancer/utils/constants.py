"""Shared constants for the rebalancing engine."""

# 100% of a position's liquidity, in basis points
FULL_WITHDRAW_BPS = 10_000

# Substrings that mark a create/confirm failure as recoverable-transient
TRANSIENT_ERROR_MARKERS = (
    "slippage",
    "price moved",
    "exceededbinslippagetolerance",
    "6004",
    "block height exceeded",
    "blockheightexceeded",
)

# Tool names exposed by the remote access-control service
TOOL_GET_LINKED_ACCOUNT = "get_linked_account"
TOOL_CHECK_SUBSCRIPTION = "check_subscription"
TOOL_GET_CREDIT_BALANCE = "get_credit_balance"
TOOL_GET_SETTINGS = "get_reposition_settings"
TOOL_UPDATE_SETTINGS = "update_reposition_settings"
TOOL_USE_CREDITS = "use_credits"
TOOL_RECORD_EXECUTION = "record_execution"

# Minimum credit balance that grants one automated reposition
CREDITS_PER_REPOSITION = 1

# Scan log outcomes
OUTCOME_IN_RANGE = "in_range"
OUTCOME_COOLDOWN = "cooldown"
OUTCOME_ACCESS_DENIED = "access_denied"
OUTCOME_DISABLED = "disabled"
OUTCOME_REPOSITIONED = "repositioned"
OUTCOME_FAILED = "failed"
OUTCOME_CRITICAL = "critical"
OUTCOME_STALE = "stale_closed"
OUTCOME_DEFERRED = "deferred"

# Ordering of the user's urgency threshold setting
URGENCY_LEVELS = {"low": 1, "medium": 2, "high": 3}
DEFAULT_URGENCY = "medium"
