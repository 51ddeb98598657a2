"""Trigger dispatcher: classifies inbound events into pipeline intents."""

from src.rpi.dispatcher.dispatcher import (
    COMMAND_TOKENS,
    ParsedComment,
    TriggerDispatcher,
    create_dispatcher,
)
from src.rpi.dispatcher.models import (
    AdHocQuery,
    Intent,
    NewRun,
    RerunRequest,
    ScheduledCleanup,
)

__all__ = [
    "COMMAND_TOKENS",
    "AdHocQuery",
    "Intent",
    "NewRun",
    "ParsedComment",
    "RerunRequest",
    "ScheduledCleanup",
    "TriggerDispatcher",
    "create_dispatcher",
]
