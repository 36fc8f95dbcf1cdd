"""Centralized model keys, provider endpoints, and engine constants."""

# Model keys understood by the model client. Keys starting with "gemini"
# select the alternate (functionCall parts) wire format.
MODELS = {
    "default": "llama-4-scout",
    "fast": "llama-4-scout",
    "reasoning": "kimi-k2.5",
    "gemini": "gemini-3-pro",
}

# Provider model identifiers sent on the wire, keyed by model key
PROVIDER_MODEL_IDS = {
    "llama-4-scout": "meta-llama/llama-4-scout-17b-16e-instruct",
    "kimi-k2.5": "moonshotai/kimi-k2.5",
    "gemini-3-pro": "gemini-3-pro-preview",
}

# Endpoints
OPENAI_COMPATIBLE_BASE_URL = "https://api.groq.com/openai/v1"
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

# Pages where script injection is impossible; only navigate is honoured
RESTRICTED_URL_PREFIXES = (
    "chrome://",
    "chrome-extension://",
    "about:",
    "edge://",
    "brave://",
)

# Loop budgets (goal-complexity heuristic), first match wins
DEFAULT_LOOP_BUDGETS = [
    {
        "name": "complex",
        "budget": 40,
        "keywords": [
            "buy", "purchase", "checkout", "order", "book", "apply", "register",
            "sign up", "application", "compare", "every", "all",
        ],
    },
    {
        "name": "standard",
        "budget": 25,
        "keywords": [
            "fill", "form", "search", "find", "submit", "login", "log in",
            "sign in", "download", "upload",
        ],
    },
    {
        "name": "simple",
        "budget": 10,
        "keywords": [
            "click", "open", "go to", "navigate", "scroll", "visit", "read",
            "extract", "summarize", "copy",
        ],
    },
]
DEFAULT_LOOP_BUDGET = 25

# Orchestrator windows
STUCK_WINDOW = 3
HISTORY_WINDOW = 8

# Wait strategy timings (milliseconds)
DOM_QUIET_MS = 300
DOM_INITIAL_QUIET_MS = 500
NETWORK_SETTLE_MS = 200
DEFAULT_SETTLE_MS = 150
DEFAULT_WAIT_TIMEOUT_MS = 3000
URL_CHANGE_TIMEOUT_MS = 5000
POLL_INTERVAL_MS = 50
SCROLL_SETTLE_MS = 100
SCROLL_ANIMATION_MS = 400
TYPING_DELAY_MS = 15

# Audit log ring size
MAX_AUDIT_ENTRIES = 200

# Native companion limits
NATIVE_MAX_READ_BYTES = 1024 * 1024
NATIVE_ALLOWED_DIRS = ("~/Documents", "~/Desktop", "~/Downloads")

# Debug session ring buffers
DEBUG_MAX_NETWORK = 20
DEBUG_MAX_CONSOLE = 30
DEBUG_MAX_ERRORS = 10
DEBUG_MAX_BODY_CHARS = 2000
