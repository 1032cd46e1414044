"""
Home Bridge - Constants
Centralized tunables to avoid magic numbers throughout the codebase.
"""

# =============================================================================
# NAMES & MESSAGES
# =============================================================================

MAX_NAME_LENGTH = 100            # Canonical participant names are cut to this
NAME_DELIMITER = "_"             # Replaces whitespace runs inside names
FALLBACK_USER_NAME = "User"      # Used when a display name sanitizes to nothing
MAX_BODY_LENGTH = 300            # Encoded message bodies are cut to this
DISCORD_MAX_MESSAGE_LENGTH = 2000  # Discord's max message length

# =============================================================================
# LANGUAGE MODEL
# =============================================================================

RATE_LIMIT_CAPACITY = 10         # Requests allowed per interval
RATE_LIMIT_INTERVAL = 60         # Seconds for the bucket to drain completely
MAX_TOOL_DEPTH = 3               # Tool rounds before the turn is aborted
MAX_OUTPUT_TOKENS = 300          # Completion budget per submission
STATUS_OUTPUT_TOKENS = 200       # Budget for ambient status generation
HISTORY_LIMIT = 20               # Messages included in the context window
API_TIMEOUT = 60                 # Seconds per provider request

# =============================================================================
# GATEWAY SUPERVISION
# =============================================================================

RECONNECT_INITIAL_DELAY = 2.0    # Seconds before the first retry
RECONNECT_BACKOFF_FACTOR = 2.0   # Delay multiplier per failed attempt
RECONNECT_MAX_DELAY = 300.0      # Cap for the retry delay
RECONNECT_MAX_RETRIES = 5        # Retries after the first attempt
MATRIX_SYNC_TIMEOUT_MS = 30000   # Long-poll timeout for /sync
MATRIX_MAX_EVENT_AGE = 10        # Seconds; older events are backlog and ignored
MATRIX_SENT_EVENT_CACHE = 500    # Own event ids remembered for reply detection

# =============================================================================
# RESPONSE QUEUE
# =============================================================================

QUEUE_DELAY = 0.5                # Pause between queued responses (seconds)

# =============================================================================
# AMBIENT BEHAVIOR
# =============================================================================

REACTION_CHANCE_CEILING = 0.25   # Max probability to react to a message
REACTION_MIN_MINUTES = 1         # No reactions sooner than this after the last
REACTION_MAX_MINUTES = 40        # Ceiling reached at this many minutes
REACTION_MIDPOINT_MINUTES = 20   # Logistic midpoint
REACTION_STEEPNESS = 0.25        # Logistic steepness
REACTION_COOLDOWN_SECONDS = 60   # Hard cooldown between reactions
STATUS_ROTATION_MINUTES = 15     # Presence changes at this pace
STATUS_MESSAGE_COUNT = 8         # Status lines generated per day
FALLBACK_REACTIONS = ["👍", "😂", "👀", "🔥", "🤔", "❤️"]

# =============================================================================
# DASHBOARD / METRICS
# =============================================================================

DASHBOARD_CALL_TIMEOUT = 30      # Seconds to wait for a bridge coroutine
DEFAULT_DASHBOARD_PORT = 5000
DEFAULT_METRICS_PORT = 8000

# =============================================================================
# USER-FACING MESSAGES
# =============================================================================

RECURSION_LIMIT_MESSAGE = "I went down a rabbit hole with my tools there. Ask me again, maybe a bit simpler?"

LLM_FALLBACKS = {
    "error": "My brain is offline right now. Try again in a bit.",
    "filtered": "I'd rather not answer that one.",
    "truncated": "I had too much to say and lost my train of thought. Try asking more specifically.",
}

USER_FRIENDLY_ERRORS = {
    "already_active": "A dialogue is already running. Wait for it to finish.",
    "not_found": "I don't know that channel or user yet.",
    "invalid": "That doesn't look right. Check the values and try again.",
    "unavailable": "I couldn't send the opening message, so the dialogue was cancelled.",
    "not_owner": "Only the bot owner can use this command.",
}
