from __future__ import annotations

TELEGRAM_MAX_MESSAGE_LENGTH = 4096
# Rendered chunks stay below the hard limit to leave headroom.
RENDER_BUDGET_BYTES = 4000
MAX_CALLBACK_DATA_BYTES = 64

PARSE_MODE_HTML = "HTML"

CALLBACK_PERMISSION = "perm"
CALLBACK_QUESTION = "q"
CALLBACK_AGENT = "agent"
CALLBACK_MENU = "menu"
CALLBACK_LEGACY_ACTION = "action"

PERMISSION_ACTION_RETRY = "retry"
PERMISSION_ACTIONS = ("once", "always", "reject", PERMISSION_ACTION_RETRY)
QUESTION_ACTION_ANSWER = "ans"
QUESTION_ACTION_REJECT = "rej"

MENU_ACTIONS = ("help", "status", "new", "list", "reset")

COMMAND_START = "start"
COMMAND_HELP = "help"
COMMAND_STATUS = "status"
COMMAND_NEW = "new"
COMMAND_LIST = "list"
COMMAND_SWITCH = "switch"
COMMAND_CD = "cd"
COMMAND_RESET = "reset"
COMMAND_RESET_CHILD = "reset-child"
COMMAND_ALIASES = {"reset_child": COMMAND_RESET_CHILD}

UNAUTHORIZED_TEXT = "⛔ You are not authorized to use this bot."
BUSY_TEXT = "⏳ Still working on your previous message. Please wait for it to finish."
EMPTY_MESSAGE_TEXT = "⚠️ Please provide a message."
SELECTION_EXPIRED_TEXT = "Selection expired"

DEFAULT_AGENT_LABELS = {
    "sisyphus": ("🤖", "Coding agent"),
    "oracle": ("🔮", "Debugging/architecture"),
    "prometheus": ("📋", "Planning"),
    "librarian": ("📚", "Documentation"),
    "metis": ("🎯", "Pre-planning consultant"),
}

DELETE_DELAY_SECONDS = 0.1
SESSION_LIST_LIMIT = 50
SHUTDOWN_GRACE_SECONDS = 2.0
REMOTE_PROBE_BACKOFF_INITIAL_SECONDS = 1.0
REMOTE_PROBE_BACKOFF_MAX_SECONDS = 30.0
