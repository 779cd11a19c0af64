from __future__ import annotations
from pathlib import Path
import fcntl
from typing import Any, Dict, Optional
import yaml

from sanctionkeeper.datatypes.discord_datatypes import RoleID
from sanctionkeeper.util.logger import get_logger

logger = get_logger("app_configuration")


CONFIG_PATH = Path("./config/app_config.yml").resolve()

DEFAULT_DATABASE_PATH = "data/sanctions.db"
DEFAULT_SWEEP_INTERVAL_SECONDS = 3600.0
DEFAULT_ID_GENERATION_MAX_ATTEMPTS = 10
DEFAULT_TIMER_FIRE_GRACE_SECONDS = 1.0


class AppConfig:
    """File-lock based accessor around the YAML application configuration.

    The class caches the contents of ``./config/app_config.yml`` and exposes
    typed shortcuts for the sanction scheduler. Missing keys and malformed
    values fall back to defaults so a bad config never stops the bot.
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path
        self._data: Dict[str, Any] = {}
        self.reload()

    # --------------------------
    # Private helpers
    # --------------------------
    def load_from_disk(self) -> Dict[str, Any]:
        try:
            with self.config_path.open("r", encoding="utf-8") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                try:
                    data = yaml.safe_load(f)
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except FileNotFoundError:
            logger.error("[APP CONFIGURATION] Config file %s not found.", self.config_path)
            return {}
        except Exception as exc:
            logger.error("[APP CONFIGURATION] Failed to load config %s: %s", self.config_path, exc)
            return {}

        if not isinstance(data, dict):
            if data is not None:
                logger.error("[APP CONFIGURATION] Config %s is not a mapping; ignoring it.", self.config_path)
            return {}
        return data

    def _section(self, name: str) -> Dict[str, Any]:
        section = self._data.get(name, {})
        return section if isinstance(section, dict) else {}

    def _number(self, section: str, key: str, default: float) -> float:
        raw = self._section(section).get(key, default)
        try:
            value = float(raw)
        except (TypeError, ValueError):
            logger.warning("[APP CONFIGURATION] %s.%s=%r is not a number; using %s", section, key, raw, default)
            return default
        if value <= 0:
            logger.warning("[APP CONFIGURATION] %s.%s must be positive; using %s", section, key, default)
            return default
        return value

    # --------------------------
    # Public API
    # --------------------------
    def reload(self) -> Dict[str, Any]:
        """Reload configuration from disk and return the loaded mapping (empty on error)."""
        self._data = self.load_from_disk()
        return self._data

    @property
    def data(self) -> Dict[str, Any]:
        """Return the cached configuration mapping. Callers should not mutate it."""
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        """Safe lookup for top-level configuration keys."""
        return self._data.get(key, default)

    # --------------------------
    # High-level shortcuts
    # --------------------------
    @property
    def database_path(self) -> Path:
        """Path of the SQLite sanction store."""
        raw = self._section("database").get("path") or DEFAULT_DATABASE_PATH
        return Path(str(raw))

    @property
    def mute_role_id(self) -> Optional[RoleID]:
        """Role applied by mutes, or None when not configured."""
        raw = self._section("sanctions").get("mute_role_id")
        if raw in (None, ""):
            return None
        try:
            return RoleID(raw)
        except ValueError:
            logger.error("[APP CONFIGURATION] sanctions.mute_role_id=%r is not a valid role id", raw)
            return None

    @property
    def sweep_interval_seconds(self) -> float:
        """Seconds between reconciliation sweeps. Default is one hour."""
        return self._number("sanctions", "sweep_interval_seconds", DEFAULT_SWEEP_INTERVAL_SECONDS)

    @property
    def id_generation_max_attempts(self) -> int:
        """How many candidate action ids are probed before giving up."""
        return max(1, int(self._number("sanctions", "id_generation_max_attempts", DEFAULT_ID_GENERATION_MAX_ATTEMPTS)))

    @property
    def timer_fire_grace_seconds(self) -> float:
        """How early (by wall clock) a timer may wake and still fire instead of re-arming."""
        return self._number("sanctions", "timer_fire_grace_seconds", DEFAULT_TIMER_FIRE_GRACE_SECONDS)


# Shared application-wide configuration instance
app_config = AppConfig(CONFIG_PATH)
