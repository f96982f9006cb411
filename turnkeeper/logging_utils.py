"""Console logging for turn processing.

Every line carries a tag so a transcript stays readable without colour:

    [•]   deterministic bookkeeping: state transitions, context trimming,
          guard rules, fact promotion
    [LLM] language-model calls made by the guard, director or domain agents
    [!]   failures, writer anomalies, timeouts and forced pauses
    [✓]   committed turns
    [i]   notices such as a new input discarding a pending action

Lines about a specific turn start with ``[<turn_id>]``. Set
``TURNKEEPER_NO_COLOR`` to drop the ANSI codes; ``DEBUG_LLM`` and
``DEBUG_CONTEXT`` switch on prompt and context-size tracing.
"""

import os
from enum import Enum


class Color(Enum):
    """ANSI color codes for terminal output."""

    BLUE = "\033[94m"      # [•]
    YELLOW = "\033[93m"    # [LLM]
    RED = "\033[91m"       # [!]
    GREEN = "\033[92m"     # [✓]
    CYAN = "\033[96m"      # [i]

    BOLD = "\033[1m"
    RESET = "\033[0m"


def colored(text: str, color: Color, bold: bool = False) -> str:
    """Wrap text in ANSI color codes unless TURNKEEPER_NO_COLOR is set."""
    if os.getenv("TURNKEEPER_NO_COLOR"):
        return text

    prefix = color.value
    if bold:
        prefix = Color.BOLD.value + prefix

    return f"{prefix}{text}{Color.RESET.value}"


LOG_TAG_DETERMINISTIC = "[•]"
LOG_TAG_LLM = "[LLM]"
LOG_TAG_ERROR = "[!]"
LOG_TAG_SUCCESS = "[✓]"
LOG_TAG_INFO = "[i]"


def _emit(tag: str, message: str, color: Color) -> None:
    print(colored(f"  {tag} {message}", color))


def log_deterministic(message: str) -> None:
    """Turn bookkeeping that involves no model call."""
    _emit(LOG_TAG_DETERMINISTIC, message, Color.BLUE)


def log_llm(message: str) -> None:
    """A guard, director or agent decision requested from a model."""
    _emit(LOG_TAG_LLM, message, Color.YELLOW)


def log_error(message: str) -> None:
    """Failures the coordinator absorbs: timeouts, rejections, anomalies, budget pauses."""
    _emit(LOG_TAG_ERROR, message, Color.RED)


def log_success(message: str) -> None:
    _emit(LOG_TAG_SUCCESS, message, Color.GREEN)


def log_info(message: str) -> None:
    _emit(LOG_TAG_INFO, message, Color.CYAN)


def debug_enabled(flag: str) -> bool:
    """Return True when ``DEBUG_LLM``, ``DEBUG_CONTEXT`` or another DEBUG_* switch is on."""
    return os.getenv(flag, "").lower() in ("1", "true", "yes")
