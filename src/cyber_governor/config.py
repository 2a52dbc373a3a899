"""cyber_governor.config

Configuration for the governor.

All thresholds are explicit with conservative defaults. The config is frozen:
it is resolved once per hook process (see :meth:`GovernorConfig.from_env`)
and passed explicitly to everything that needs it.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional


DEBUG_ENV_VAR = "CYBER_GOVERNOR_DEBUG"
STATE_DIR_ENV_VAR = "CYBER_GOVERNOR_STATE_DIR"
DEBUG_FLAG_FILENAME = "debug-enabled"


def default_state_dir() -> Path:
    return Path(tempfile.gettempdir()) / "cyber-governor"


# ================================
# Governor Config
# ================================

@dataclass(frozen=True)
class GovernorConfig:
    """Limits, storage location and debug flag for the governor.

    All limits have sensible defaults. Override what you need.
    """

    # RETRY / OSCILLATION LIMITS
    # --------------------------
    # Trailing run of failed calls to the same tool that counts as a loop.
    max_consecutive_failures: int = 3

    # Identical calls (same fingerprint) within the window that count as a loop.
    max_retries: int = 5

    # Trailing window used by every history-based count (milliseconds).
    oscillation_window_ms: int = 30000

    # HISTORY
    # -------
    # Entries kept per session; oldest dropped first.
    max_history_size: int = 100

    # SAFETY
    # ------
    # Edit calls whose old_string is longer than this are forbidden.
    max_old_string_length: int = 10000

    # BACKOFF (advisory only, the hook never sleeps)
    # -------
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 30000
    backoff_jitter: float = 0.3

    # STORAGE
    # -------
    state_dir: Path = field(default_factory=default_state_dir)

    # DEBUG
    # -----
    # When True, hook responses carry a `_debug` block and debug logs go to stderr.
    debug: bool = False

    def __post_init__(self) -> None:
        if self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be >= 1")
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.oscillation_window_ms < 1:
            raise ValueError("oscillation_window_ms must be >= 1")
        if self.max_history_size < 1:
            raise ValueError("max_history_size must be >= 1")
        if self.max_old_string_length < 1:
            raise ValueError("max_old_string_length must be >= 1")
        if self.backoff_base_ms < 1:
            raise ValueError("backoff_base_ms must be >= 1")
        if self.backoff_max_ms < self.backoff_base_ms:
            raise ValueError("backoff_max_ms must be >= backoff_base_ms")
        if not 0.0 <= self.backoff_jitter <= 1.0:
            raise ValueError("backoff_jitter must be between 0.0 and 1.0")
        if not isinstance(self.state_dir, Path):
            object.__setattr__(self, "state_dir", Path(self.state_dir))

    # --------------------------------
    # Helper methods
    # --------------------------------

    @property
    def debug_flag_path(self) -> Path:
        """Sentinel file that turns debug mode on for every hook process."""
        return self.state_dir / DEBUG_FLAG_FILENAME

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "GovernorConfig":
        """Resolve the config once at process start.

        Debug is on when ``CYBER_GOVERNOR_DEBUG`` is set to a non-empty value,
        or when the sentinel file exists in the state directory (the sentinel
        works even when the host does not forward environment variables).
        """
        env = os.environ if environ is None else environ

        state_dir = overrides.pop("state_dir", None)
        if state_dir is None:
            raw_dir = env.get(STATE_DIR_ENV_VAR)
            state_dir = Path(raw_dir) if raw_dir else default_state_dir()
        state_dir = Path(state_dir)

        debug = overrides.pop("debug", None)
        if debug is None:
            debug = bool(env.get(DEBUG_ENV_VAR)) or (state_dir / DEBUG_FLAG_FILENAME).exists()

        return cls(state_dir=state_dir, debug=debug, **overrides)
