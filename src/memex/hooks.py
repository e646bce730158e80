"""
Editor hook integration.

The assistant runs ``memex hook`` at session end and before context
compaction, passing a JSON payload on stdin. The hook never blocks or
fails its caller: it validates the payload, spawns a detached background
sync for the session, and returns exit code 0 whatever happens. Problems
are written to the log only.
"""

import json
import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from memex.config import Settings, settings as default_settings
from memex.sources import SYNC_ALL, is_valid_session_id

logger = logging.getLogger(__name__)

SESSION_END = "SessionEnd"
PRE_COMPACT = "PreCompact"

# Environment marker set on background syncs spawned by the hook
HOOK_ENV_VAR = "MEMEX_HOOK"


@dataclass
class HookInput:
    """Payload the assistant passes to hook commands."""

    session_id: Optional[str] = None
    hook_event_name: Optional[str] = None
    transcript_path: Optional[str] = None
    cwd: Optional[str] = None

    @classmethod
    def parse(cls, raw: Optional[str]) -> "HookInput":
        """
        Parse hook stdin. Empty, malformed or non-object input yields an
        empty HookInput rather than an error.
        """
        if not raw or not raw.strip():
            return cls()
        try:
            data: Any = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Hook input is not valid JSON")
            return cls()
        if not isinstance(data, dict):
            logger.warning("Hook input is not a JSON object")
            return cls()

        def _str(key: str) -> Optional[str]:
            value = data.get(key)
            return value if isinstance(value, str) and value else None

        return cls(
            session_id=_str("session_id"),
            hook_event_name=_str("hook_event_name"),
            transcript_path=_str("transcript_path"),
            cwd=_str("cwd"),
        )


def should_sync(event_name: Optional[str], config: Settings) -> bool:
    """Whether configuration allows syncing for this hook event."""
    if event_name == PRE_COMPACT:
        return config.sync_on_compaction
    return config.auto_sync


def build_sync_command(session_id: str) -> list[str]:
    return [sys.executable, "-m", "memex", "sync", "--session", session_id, "--quiet"]


def spawn_background_sync(session_id: str, config: Optional[Settings] = None) -> int:
    """
    Start a detached sync for one session and return without waiting.

    Output of the child goes to the sync log. The child runs in its own
    session so it survives the hook process exiting.

    Returns:
        PID of the spawned process
    """
    config = config or default_settings
    log_path: Path = config.sync_log_path
    log_path.parent.mkdir(parents=True, exist_ok=True)

    env = dict(os.environ)
    env[HOOK_ENV_VAR] = "1"

    with log_path.open("ab") as log_file:
        process = subprocess.Popen(
            build_sync_command(session_id),
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            env=env,
            start_new_session=True,
            close_fds=True,
        )

    logger.info(f"Spawned background sync for session {session_id} (pid {process.pid})")
    return process.pid


def run_hook(raw_input: Optional[str], config: Optional[Settings] = None) -> int:
    """
    Handle one hook invocation.

    Args:
        raw_input: Hook JSON read from stdin
        config: Settings controlling auto sync

    Returns:
        Always 0, so the assistant is never interrupted
    """
    config = config or default_settings
    payload = HookInput.parse(raw_input)

    if not should_sync(payload.hook_event_name, config):
        logger.info(f"Sync disabled for hook event {payload.hook_event_name or 'unknown'}")
        return 0

    if payload.session_id is None:
        logger.warning("Hook called without a session_id; skipping sync")
        return 0

    if not is_valid_session_id(payload.session_id) or payload.session_id == SYNC_ALL:
        logger.warning(f"Hook called with malformed session_id {payload.session_id!r}; skipping sync")
        return 0

    try:
        spawn_background_sync(payload.session_id, config)
    except OSError as e:
        logger.error(f"Could not spawn background sync for {payload.session_id}: {e}")

    return 0
