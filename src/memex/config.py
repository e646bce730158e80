"""
Memex Configuration.

Centralized configuration management using Pydantic Settings.
Loads configuration from environment variables (prefixed with ``MEMEX_``).
"""

import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


def get_default_data_dir() -> str:
    """
    Get the per-user directory holding the memory database.

    Returns:
        str: ``$HOME/.memex`` or a relative ``.memex`` when HOME is unset
    """
    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".memex")

    return ".memex"


def get_default_source_dir() -> str:
    """
    Get the directory where the assistant writes its session transcripts.

    Returns:
        str: ``$HOME/.claude/projects``
    """
    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".claude" / "projects")

    return ".claude/projects"


def get_xdg_state_dir() -> str:
    """
    Get XDG-compliant state directory for Memex logs.

    Follows XDG Base Directory Specification:
    - Uses $XDG_STATE_HOME/memex if XDG_STATE_HOME is set
    - Falls back to $HOME/.local/state/memex if not set
    - Returns relative path ./logs if HOME not available (dev/testing)

    Returns:
        str: Path to state/logs directory
    """
    xdg_state_home = os.getenv("XDG_STATE_HOME")
    if xdg_state_home:
        return str(Path(xdg_state_home) / "memex" / "logs")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "state" / "memex" / "logs")

    # Fallback for development/testing environments without HOME
    return "./logs"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MEMEX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    data_dir: str = get_default_data_dir()
    database_path: Optional[str] = None  # Defaults to <data_dir>/memory.db
    busy_timeout_ms: int = 5000  # Bounded wait before a locked write fails
    cache_size_kib: int = 64000  # SQLite page cache (negative cache_size pragma)

    # Session source
    source_dir: str = get_default_source_dir()

    # Search
    search_output_budget: int = 50_000  # Max serialized characters per result set
    search_default_limit: int = 20
    snippet_tokens: int = 48  # Tokens of context around each highlighted match
    min_term_length: int = 3  # Shorter bare terms are dropped from queries

    # Hooks
    auto_sync: bool = True  # Sync when an assistant session ends
    sync_on_compaction: bool = True  # Sync before the assistant compacts context
    recovery_on_startup: bool = True  # Resume interrupted files before a targeted sync

    # Logging
    log_level: str = "INFO"
    log_dir: Optional[str] = None  # Defaults to XDG state directory
    log_format: str = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
    log_console_enabled: bool = True
    log_file_enabled: bool = True
    log_max_bytes: int = 10_485_760  # 10 MiB
    log_backup_count: int = 5

    @property
    def database_file(self) -> Path:
        """Resolved path of the SQLite database file."""
        if self.database_path:
            return Path(self.database_path).expanduser()
        return Path(self.data_dir).expanduser() / "memory.db"

    @property
    def source_directory(self) -> Path:
        """Resolved path of the session transcript root."""
        return Path(self.source_dir).expanduser()

    @property
    def log_directory(self) -> Path:
        """Get log directory as Path object."""
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return Path(get_xdg_state_dir())

    @property
    def sync_log_path(self) -> Path:
        """Log file receiving output of background syncs."""
        return self.log_directory / "sync.log"


# Global settings instance
settings = Settings()
